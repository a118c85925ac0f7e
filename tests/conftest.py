"""Shared fakes standing in for the pipeline framework."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from google.cloud import bigquery

from bq_io.client import BigQueryClient, QueryJob
from bq_io.reads import ClientCache
from bq_io.session import SessionOptions


class FakeWriteResult:
    """Native write result exposing both failed-insert side outputs."""

    def __init__(self) -> None:
        self.failed_inserts = [{"id": 1}]
        self.failed_inserts_with_err = [{"row": {"id": 1}, "error": "invalid"}]


class FakeDataset:
    """In-memory dataset recording the steps applied to it."""

    def __init__(self, session: FakeSession, elements: list[Any]) -> None:
        self._session = session
        self.elements = elements

    @property
    def context(self) -> FakeSession:
        return self._session

    def map(self, fn: Callable[[Any], Any], name: str | None = None) -> FakeDataset:
        self._session.steps.append(name)
        return FakeDataset(self._session, [fn(e) for e in self.elements])

    def apply(self, request: Any) -> FakeWriteResult:
        self._session.writes.append((request, list(self.elements)))
        return self._session.write_result


class FakeSession:
    """Pipeline session applying reads to a fixed list of rows."""

    def __init__(self, rows: list[dict[str, Any]] | None = None) -> None:
        self.rows = rows or []
        self.reads: list[Any] = []
        self.writes: list[tuple[Any, list[Any]]] = []
        self.steps: list[str | None] = []
        self.close_hooks: list[Callable[[], None]] = []
        self.write_result = FakeWriteResult()

    def options(self) -> SessionOptions:
        return SessionOptions(project="test-project")

    def apply(self, request: Any) -> list[Any]:
        self.reads.append(request)
        return [request.parse_fn(row) for row in self.rows]

    def wrap(self, raw: Any) -> FakeDataset:
        return FakeDataset(self, list(raw))

    def on_close(self, fn: Callable[[], None]) -> None:
        self.close_hooks.append(fn)

    def close(self) -> None:
        for fn in self.close_hooks:
            fn()


DEST = bigquery.TableReference(
    bigquery.DatasetReference("test-project", "bq_io_staging_us"), "bq_io_query_1"
)


@pytest.fixture
def session() -> FakeSession:
    return FakeSession(rows=[{"id": 1, "name": "alice"}, {"id": 2, "name": "bob"}])


@pytest.fixture
def client() -> MagicMock:
    """A ``BigQueryClient`` double with the query cache enabled."""
    mock = MagicMock(spec=BigQueryClient)
    mock.is_cache_enabled.return_value = True
    mock.new_query_job.side_effect = lambda sql, flatten: QueryJob(
        sql, flatten, DEST, MagicMock()
    )
    mock.is_legacy_sql.return_value = False
    return mock


@pytest.fixture
def clients(client: MagicMock) -> ClientCache:
    return ClientCache(factory=lambda _session: client)
