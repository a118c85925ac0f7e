"""BigQuery IOs producing and consuming typed records.

Records convert through the ``BigQueryType`` registered for their class
(see ``bq_io.types``).  Reads only ever convert rows to records and
writes only records to rows.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from google.cloud import bigquery

from bq_io.client import BigQueryClient
from bq_io.errors import ReadOnlySourceError
from bq_io.io import (
    BigQueryIO,
    BigQueryTable,
    BigQueryTypedSelect,
    ReadOnlyIO,
    SelectReadParam,
    StorageReadParam,
    TableWriteParam,
    drop_failed_inserts,
)
from bq_io.reads import ClientCache, read_storage, read_table
from bq_io.requests import (
    ExtendedErrorInfo,
    ReadMethod,
    ReadRequest,
    table_read_options,
)
from bq_io.session import Dataset, PipelineSession
from bq_io.sources import Query, Source, Table
from bq_io.taps import BigQueryStorageTap, Tap
from bq_io.types import BigQueryType, lookup


@dataclass(frozen=True)
class TypedTableWriteParam:
    """Parameters of a typed table write.

    Schema and description come from the record type.
    """

    write_disposition: str | None = None
    create_disposition: str | None = None
    time_partitioning: bigquery.TimePartitioning | None = None
    extended_error_info: ExtendedErrorInfo = ExtendedErrorInfo.DISABLED
    insert_error_transform: Callable[[Dataset], None] = drop_failed_inserts


class _TypedIO(BigQueryIO):
    def __init__(self, record_type: type):
        self.record_type = record_type
        self.bqt: BigQueryType[Any] = lookup(record_type)


class TypedSelect(_TypedIO):
    """Records read from a SELECT query."""

    def __init__(
        self,
        record_type: type,
        query: Query | str,
        clients: ClientCache | None = None,
    ):
        super().__init__(record_type)
        if isinstance(query, str):
            query = Query.from_string(query)
        self.query = query
        self.underlying = BigQueryTypedSelect(
            ReadRequest.read(self.bqt.from_avro),
            query,
            self.bqt.from_table_row,
            clients,
        )

    @property
    def test_id(self) -> str:
        return self.underlying.test_id

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return self.underlying.read(session, SelectReadParam())

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("Select queries are read-only")

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return self.underlying.tap(SelectReadParam(), client=client)


class TypedTable(_TypedIO):
    """Records of a table."""

    def __init__(self, record_type: type, table: Table):
        super().__init__(record_type)
        self.table = table

    @property
    def test_id(self) -> str:
        return f"BigQueryIO({self.table.spec})"

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return read_table(session, ReadRequest.read(self.bqt.from_avro), self.table.ref)

    def write(self, data: Dataset, params: TypedTableWriteParam | None = None) -> Tap:
        params = params or TypedTableWriteParam()
        rows = data.map(self.bqt.to_table_row, name="ToTableRow")
        table_params = TableWriteParam(
            schema=self.bqt.schema or None,
            write_disposition=params.write_disposition,
            create_disposition=params.create_disposition,
            table_description=self.bqt.table_description,
            time_partitioning=params.time_partitioning,
            extended_error_info=params.extended_error_info,
            insert_error_transform=params.insert_error_transform,
        )
        return BigQueryTable(self.table).write(rows, table_params).map(
            self.bqt.from_table_row
        )

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return BigQueryTable(self.table).tap(client=client).map(self.bqt.from_table_row)


class TypedStorage(_TypedIO):
    """Records of a table read with the Storage Read API."""

    def __init__(
        self,
        record_type: type,
        table: Table,
        default_params: StorageReadParam | None = None,
    ):
        super().__init__(record_type)
        self.table = table
        self.default_params = default_params or StorageReadParam()

    @property
    def test_id(self) -> str:
        return f"BigQueryIO({self.table.spec})"

    def read(
        self, session: PipelineSession, params: StorageReadParam | None = None
    ) -> Dataset:
        params = params or self.default_params
        return read_storage(
            session,
            ReadRequest.read(self.bqt.from_avro),
            self.table,
            params.selected_fields,
            params.row_restriction,
        )

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("Storage API is read-only")

    def tap(
        self,
        params: StorageReadParam | None = None,
        *,
        client: BigQueryClient | None = None,
    ) -> Tap:
        params = params or self.default_params
        options = table_read_options(params.selected_fields, params.row_restriction)
        return BigQueryStorageTap(self.table, options, client).map(
            self.bqt.from_table_row
        )


class TypedStorageQuery(_TypedIO):
    """Records of a query, read back with the Storage Read API."""

    def __init__(
        self,
        record_type: type,
        query: Query | str,
        clients: ClientCache | None = None,
    ):
        super().__init__(record_type)
        if isinstance(query, str):
            query = Query.from_string(query)
        self.query = query
        self.underlying = BigQueryTypedSelect(
            ReadRequest.read(self.bqt.from_avro).with_method(ReadMethod.DIRECT_READ),
            query,
            self.bqt.from_table_row,
            clients,
        )

    @property
    def test_id(self) -> str:
        return self.underlying.test_id

    def read(self, session: PipelineSession, params: Any = None) -> Dataset:
        return self.underlying.read(session, SelectReadParam())

    def write(self, data: Dataset, params: Any = None) -> Tap:
        raise ReadOnlySourceError("Storage API is read-only")

    def tap(self, params: Any = None, *, client: BigQueryClient | None = None) -> Tap:
        return self.underlying.tap(SelectReadParam(), client=client)


def _declared_sources(bqt: BigQueryType[Any]) -> list[str]:
    return [
        name
        for name, declared in (
            ("table", bqt.is_table),
            ("query", bqt.is_query),
            ("storage", bqt.is_storage),
        )
        if declared
    ]


def typed(record_type: type, clients: ClientCache | None = None) -> BigQueryIO:
    """Return the IO for the source declared by *record_type*.

    Raises:
        ValueError: If the record type declares no source or more than one.
    """
    bqt = lookup(record_type)
    declared = _declared_sources(bqt)
    if len(declared) != 1:
        raise ValueError(
            f"{record_type.__name__} must declare exactly one of table, query "
            f"or storage, got {declared or 'none'}"
        )

    if bqt.table is not None:
        return TypedTable(record_type, Table.from_spec(bqt.table))
    if bqt.query is not None:
        return TypedSelect(record_type, Query.from_string(bqt.query), clients)
    assert bqt.storage is not None  # Narrowing for type checker.
    return TypedStorage(
        record_type,
        Table.from_spec(bqt.storage.table),
        StorageReadParam(bqt.storage.selected_fields, bqt.storage.row_restriction),
    )


def dynamic(
    record_type: type,
    source: Source | None = None,
    clients: ClientCache | None = None,
) -> BigQueryIO:
    """Return a read-only IO for *record_type*.

    An explicit *source* wins.  Without one, the record type must declare
    either a table or a query, but not both.

    Raises:
        ValueError: If no source can be resolved.
    """
    if isinstance(source, Table):
        return ReadOnlyIO(TypedTable(record_type, source))
    if isinstance(source, Query):
        return TypedSelect(record_type, source, clients)

    bqt = lookup(record_type)
    if bqt.is_table and not bqt.is_query:
        assert bqt.table is not None  # Narrowing for type checker.
        return ReadOnlyIO(TypedTable(record_type, Table.from_spec(bqt.table)))
    if bqt.is_query and not bqt.is_table:
        assert bqt.query is not None  # Narrowing for type checker.
        return TypedSelect(record_type, Query.from_string(bqt.query), clients)
    raise ValueError(
        f"{record_type.__name__} must declare either a table or a query"
    )
