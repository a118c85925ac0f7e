"""Taps: synchronous read-back of data produced by a write or a query.

Taps run outside the lazy pipeline graph.  ``value()`` talks to BigQuery
directly and ``open()`` re-reads the same data inside a new session.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any

from google.cloud import bigquery

from bq_io.client import BigQueryClient
from bq_io.errors import UnsupportedOperationError
from bq_io.reads import read_storage
from bq_io.requests import ReadRequest, TableReadOptions
from bq_io.session import Dataset, PipelineSession
from bq_io.sources import Table, table_spec


class Tap:
    """Handle to data that can be read back."""

    def value(self) -> Iterator[Any]:
        raise NotImplementedError

    def open(self, session: PipelineSession) -> Dataset:
        raise NotImplementedError

    def map(self, fn: Callable[[Any], Any]) -> Tap:
        return MappedTap(self, fn)


class MappedTap(Tap):
    def __init__(self, underlying: Tap, fn: Callable[[Any], Any]):
        self.underlying = underlying
        self.fn = fn

    def value(self) -> Iterator[Any]:
        return map(self.fn, self.underlying.value())

    def open(self, session: PipelineSession) -> Dataset:
        return self.underlying.open(session).map(self.fn)


class BigQueryTap(Tap):
    """Tap over every row of a table."""

    def __init__(
        self, table: bigquery.TableReference, client: BigQueryClient | None = None
    ):
        self.table = table
        self._client = client

    @property
    def client(self) -> BigQueryClient:
        if self._client is None:
            self._client = BigQueryClient.default_instance()
        return self._client

    def value(self) -> Iterator[dict[str, Any]]:
        return self.client.list_rows(self.table)

    def open(self, session: PipelineSession) -> Dataset:
        read = ReadRequest.read_table_rows().from_table(self.table)
        return session.wrap(session.apply(read))

    def __repr__(self) -> str:
        return f"BigQueryTap({table_spec(self.table)})"


class BigQueryStorageTap(Tap):
    """Tap reading a table through the Storage Read API."""

    def __init__(
        self,
        table: Table,
        read_options: TableReadOptions,
        client: BigQueryClient | None = None,
    ):
        self.table = table
        self.read_options = read_options
        self._client = client

    @property
    def client(self) -> BigQueryClient:
        if self._client is None:
            self._client = BigQueryClient.default_instance()
        return self._client

    def value(self) -> Iterator[dict[str, Any]]:
        return self.client.read_storage_rows(self.table.ref, self.read_options)

    def open(self, session: PipelineSession) -> Dataset:
        return read_storage(
            session,
            ReadRequest.read_table_rows(),
            self.table,
            list(self.read_options.selected_fields),
            self.read_options.row_restriction or None,
        )

    def __repr__(self) -> str:
        return f"BigQueryStorageTap({self.table.spec})"


class UnsupportedTap(Tap):
    """Tap that fails on any use."""

    def __init__(self, message: str):
        self.message = message

    def value(self) -> Iterator[Any]:
        raise UnsupportedOperationError(self.message)

    def open(self, session: PipelineSession) -> Dataset:
        raise UnsupportedOperationError(self.message)

    def map(self, fn: Callable[[Any], Any]) -> Tap:
        return self
