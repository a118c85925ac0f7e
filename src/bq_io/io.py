"""BigQuery IOs producing and consuming raw rows.

Every IO has the same surface:

- ``read(session, params)`` adds a read to the pipeline and returns the
  resulting ``Dataset``;

- ``write(data, params)`` adds a write and returns a ``Tap`` on what was
  written (read-only IOs raise ``ReadOnlySourceError``);

- ``tap(params)`` re-resolves the read synchronously, outside the
  pipeline, and returns a ``Tap``;

- ``test_id`` identifies the IO in test harnesses.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from google.cloud import bigquery

from bq_io.client import BigQueryClient
from bq_io.errors import ReadOnlySourceError, UnsupportedOperationError
from bq_io.reads import ClientCache, read_query, read_storage, read_table
from bq_io.requests import (
    ExtendedErrorInfo,
    ReadMethod,
    ReadRequest,
    WriteRequest,
    table_read_options,
)
from bq_io.session import Dataset, PipelineSession
from bq_io.sources import Query, Source, Table, source_id
from bq_io.taps import BigQueryStorageTap, BigQueryTap, Tap, UnsupportedTap

logger = logging.getLogger(__name__)

DEFAULT_FLATTEN_RESULTS = False

_shared_clients = ClientCache()


def shared_clients() -> ClientCache:
    """Return the client cache used by IOs built without one."""
    return _shared_clients


def _identity(row: Any) -> Any:
    return row


def drop_failed_inserts(failed: Dataset) -> None:
    """Consume the failed-insert side output without doing anything.

    Leaving the side output unconsumed would leave a dangling branch in
    the pipeline graph.
    """
    failed.map(lambda _: None, name="DropFailedInserts")


@dataclass(frozen=True)
class SelectReadParam:
    flatten_results: bool = DEFAULT_FLATTEN_RESULTS


@dataclass(frozen=True)
class StorageReadParam:
    """Column projection and row filter of a Storage Read API read.

    An empty ``selected_fields`` reads every column; ``row_restriction``
    of ``None`` reads every row.
    """

    selected_fields: Sequence[str] = ()
    row_restriction: str | None = None


@dataclass(frozen=True)
class TableWriteParam:
    """Parameters of a table write.

    ``None`` fields are left out of the write so BigQuery applies its own
    defaults.
    """

    schema: Sequence[bigquery.SchemaField] | None = None
    write_disposition: str | None = None
    create_disposition: str | None = None
    table_description: str | None = None
    time_partitioning: bigquery.TimePartitioning | None = None
    extended_error_info: ExtendedErrorInfo = ExtendedErrorInfo.DISABLED
    insert_error_transform: Callable[[Dataset], None] = drop_failed_inserts


class BigQueryIO:
    """Base class of every BigQuery IO."""

    @property
    def test_id(self) -> str:
        raise NotImplementedError

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        raise NotImplementedError

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise NotImplementedError

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        raise NotImplementedError

    def __repr__(self) -> str:
        return self.test_id


def _test_id(value: str) -> str:
    return f"BigQueryIO({value})"


class TestBigQueryIO(BigQueryIO):
    """IO that only carries an identity, used to stub reads in tests."""

    __test__ = False  # not a pytest test class

    def __init__(self, ident: str):
        self.ident = ident

    @property
    def test_id(self) -> str:
        return _test_id(self.ident)

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        raise UnsupportedOperationError(f"{self.test_id} is a test-only IO")

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise UnsupportedOperationError(f"{self.test_id} is a test-only IO")

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        raise UnsupportedOperationError(f"{self.test_id} is a test-only IO")


def test_io(ident: str | Source) -> TestBigQueryIO:
    """Build a test IO from an id string or a source descriptor."""
    if isinstance(ident, (Table, Query)):
        ident = source_id(ident)
    return TestBigQueryIO(ident)


test_io.__test__ = False  # type: ignore[attr-defined]


class ReadOnlyIO(BigQueryIO):
    """Wrap *underlying* so that writes are rejected."""

    def __init__(self, underlying: BigQueryIO):
        self.underlying = underlying

    @property
    def test_id(self) -> str:
        return self.underlying.test_id

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return self.underlying.read(session, params)

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError(f"{self.test_id} is read-only")

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return self.underlying.tap(params, client=client)


class BigQueryTypedSelect(BigQueryIO):
    """Read the result of a query through *reader*."""

    def __init__(
        self,
        reader: ReadRequest,
        query: Query,
        from_table_row: Callable[[Any], Any],
        clients: ClientCache | None = None,
    ):
        self.reader = reader
        self.query = query
        self.from_table_row = from_table_row
        self.clients = clients

    @property
    def test_id(self) -> str:
        return _test_id(self.query.underlying)

    def read(
        self, session: PipelineSession, params: SelectReadParam | None = None
    ) -> Dataset:
        params = params or SelectReadParam()
        return read_query(
            session,
            self.clients if self.clients is not None else shared_clients(),
            self.reader,
            self.query.underlying,
            params.flatten_results,
        )

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("BigQuerySelect is read-only")

    def tap(
        self,
        params: SelectReadParam | None = None,
        *,
        client: BigQueryClient | None = None,
    ) -> Tap:
        params = params or SelectReadParam()
        client = client or BigQueryClient.default_instance()
        table = client.run_query(self.query.underlying, params.flatten_results)
        return BigQueryTap(table, client).map(self.from_table_row)


class BigQuerySelect(BigQueryIO):
    """Rows of a SELECT query.

    Both legacy and standard SQL are supported.  The dialect is detected
    automatically unless the query starts with ``#legacysql`` or
    ``#standardsql``.
    """

    def __init__(self, query: Query | str, clients: ClientCache | None = None):
        if isinstance(query, str):
            query = Query.from_string(query)
        self.query = query
        self.underlying = BigQueryTypedSelect(
            ReadRequest.read_table_rows(), query, _identity, clients
        )

    @property
    def test_id(self) -> str:
        return _test_id(self.query.underlying)

    def read(
        self, session: PipelineSession, params: SelectReadParam | None = None
    ) -> Dataset:
        return self.underlying.read(session, params)

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("BigQuerySelect is read-only")

    def tap(
        self,
        params: SelectReadParam | None = None,
        *,
        client: BigQueryClient | None = None,
    ) -> Tap:
        return self.underlying.tap(params, client=client)


class BigQueryTable(BigQueryIO):
    """Rows of a table; the only raw-row IO that can be written."""

    def __init__(self, table: Table):
        self.table = table

    @property
    def test_id(self) -> str:
        return _test_id(self.table.spec)

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return read_table(session, ReadRequest.read_table_rows(), self.table.ref)

    def write(self, data: Dataset, params: TableWriteParam | None = None) -> Tap:
        """Write *data* to the table.

        Returns:
            A tap on the table, or an ``UnsupportedTap`` when appending,
            since the table then holds more than what this write produced.
        """
        params = params or TableWriteParam()
        transform = WriteRequest.to(self.table.ref)
        if params.schema is not None:
            transform = transform.with_schema(params.schema)
        if params.create_disposition is not None:
            transform = transform.with_create_disposition(params.create_disposition)
        if params.write_disposition is not None:
            transform = transform.with_write_disposition(params.write_disposition)
        if params.table_description is not None:
            transform = transform.with_table_description(params.table_description)
        if params.time_partitioning is not None:
            transform = transform.with_time_partitioning(params.time_partitioning)
        if params.extended_error_info is ExtendedErrorInfo.ENABLED:
            transform = transform.with_extended_error_info()

        logger.debug("writing %s with %s", self.table.spec, transform.additional_parameters())
        result = data.apply(transform)
        failed = params.extended_error_info.failed_inserts(result)
        params.insert_error_transform(data.context.wrap(failed))

        if params.write_disposition == bigquery.WriteDisposition.WRITE_APPEND:
            return UnsupportedTap("BigQuery with append does not support tap")
        return BigQueryTap(self.table.ref)

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return BigQueryTap(self.table.ref, client)


class BigQueryStorage(BigQueryIO):
    """Rows of a table read with the Storage Read API."""

    def __init__(self, table: Table):
        self.table = table

    @property
    def test_id(self) -> str:
        return _test_id(self.table.spec)

    def read(
        self, session: PipelineSession, params: StorageReadParam | None = None
    ) -> Dataset:
        params = params or StorageReadParam()
        return read_storage(
            session,
            ReadRequest.read_table_rows(),
            self.table,
            params.selected_fields,
            params.row_restriction,
        )

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("BigQueryStorage is read-only")

    def tap(
        self,
        params: StorageReadParam | None = None,
        *,
        client: BigQueryClient | None = None,
    ) -> Tap:
        params = params or StorageReadParam()
        options = table_read_options(params.selected_fields, params.row_restriction)
        return BigQueryStorageTap(self.table, options, client)


class BigQueryStorageSelect(BigQueryIO):
    """Rows of a query, read back with the Storage Read API."""

    def __init__(self, query: Query | str, clients: ClientCache | None = None):
        if isinstance(query, str):
            query = Query.from_string(query)
        self.query = query
        self.underlying = BigQueryTypedSelect(
            ReadRequest.read_table_rows().with_method(ReadMethod.DIRECT_READ),
            query,
            _identity,
            clients,
        )

    @property
    def test_id(self) -> str:
        return _test_id(self.query.underlying)

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return self.underlying.read(session, SelectReadParam())

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("BigQuerySelect is read-only")

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return self.underlying.tap(SelectReadParam(), client=client)
