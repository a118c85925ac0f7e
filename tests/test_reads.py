"""Tests for ``bq_io.reads``."""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from bq_io.reads import ClientCache, read_query, read_storage, read_table
from bq_io.requests import ReadMethod, ReadRequest
from bq_io.sources import Table

from conftest import DEST, FakeSession


class TestClientCache:
    """Tests for ``ClientCache``."""

    def test_one_client_per_session(self) -> None:
        """The same session always gets the same client."""
        cache = ClientCache(factory=lambda _session: MagicMock())
        first, second = FakeSession(), FakeSession()

        assert cache.client_for(first) is cache.client_for(first)
        assert cache.client_for(first) is not cache.client_for(second)
        assert len(cache) == 2

    def test_concurrent_first_access(self) -> None:
        """Racing threads share one client that is built exactly once."""
        built: list[MagicMock] = []

        def factory(_session: FakeSession) -> MagicMock:
            time.sleep(0.01)
            client = MagicMock()
            built.append(client)
            return client

        cache = ClientCache(factory=factory)
        session = FakeSession()
        barrier = threading.Barrier(8)
        seen: list[MagicMock] = []
        seen_lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            client = cache.client_for(session)
            with seen_lock:
                seen.append(client)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(seen) == 8
        assert all(client is seen[0] for client in seen)
        assert len(built) == 1
        assert built[0] is seen[0]
        assert len(cache) == 1

    def test_failed_build_is_retried(self) -> None:
        """A factory error propagates and the next call builds again."""
        client = MagicMock()
        factory = MagicMock(side_effect=[RuntimeError("no credentials"), client])
        cache = ClientCache(factory=factory)
        session = FakeSession()

        with pytest.raises(RuntimeError, match="no credentials"):
            cache.client_for(session)
        assert len(cache) == 0

        assert cache.client_for(session) is client
        assert factory.call_count == 2


class TestReadQueryCached:
    """Tests for ``read_query`` with the query cache enabled."""

    def test_reads_destination_table(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """The read targets the job's table, never the SQL."""
        read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1", True)

        client.new_query_job.assert_called_once_with("SELECT 1", True)
        (read,) = session.reads
        assert read.table == "test-project:bq_io_staging_us.bq_io_query_1"
        assert read.query is None
        assert read.validate is False

    def test_registers_teardown_wait(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """Closing the session waits for the submitted job."""
        read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1")

        assert len(session.close_hooks) == 1
        client.wait_for_jobs.assert_not_called()

        session.close()
        (job,) = client.wait_for_jobs.call_args.args
        assert job.table == DEST
        assert job.sql == "SELECT 1"

    def test_returns_wrapped_rows(
        self, session: FakeSession, clients: ClientCache
    ) -> None:
        """The dataset holds what the framework read."""
        dataset = read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1")

        assert [row["name"] for row in dataset.elements] == ["alice", "bob"]


class TestReadQueryDirect:
    """Tests for ``read_query`` with the query cache disabled."""

    def test_classifier_gets_sql_and_flatten(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """Without marker the client classifies ``(sql, flatten)``."""
        client.is_cache_enabled.return_value = False

        read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1", False)

        client.is_legacy_sql.assert_called_once_with("SELECT 1", False)
        client.new_query_job.assert_not_called()
        (read,) = session.reads
        assert read.query == "SELECT 1"
        assert read.use_standard_sql is True
        assert read.flatten_results is False
        assert session.close_hooks == []

    def test_standard_with_flatten(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """Requested flattening is left enabled."""
        client.is_cache_enabled.return_value = False

        read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1", True)

        client.is_legacy_sql.assert_called_once_with("SELECT 1", True)
        (read,) = session.reads
        assert read.use_standard_sql is True
        assert read.flatten_results is True

    def test_legacy(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """Legacy queries keep flattening and the legacy dialect."""
        client.is_cache_enabled.return_value = False
        client.is_legacy_sql.return_value = True

        read_query(session, clients, ReadRequest.read_table_rows(), "SELECT 1", False)

        (read,) = session.reads
        assert read.use_standard_sql is False
        assert read.flatten_results is True

    def test_marker_skips_classifier(
        self, session: FakeSession, clients: ClientCache, client: MagicMock
    ) -> None:
        """``#standardsql`` is honoured without asking the client."""
        client.is_cache_enabled.return_value = False
        sql = "#standardsql SELECT 1"

        read_query(session, clients, ReadRequest.read_table_rows(), sql, False)

        client.is_legacy_sql.assert_not_called()
        (read,) = session.reads
        assert read.query == sql
        assert read.use_standard_sql is True
        assert read.flatten_results is False


class TestReadStorage:
    """Tests for ``read_storage``."""

    def test_full_table(self, session: FakeSession) -> None:
        """No projection and no restriction read everything."""
        read_storage(session, ReadRequest.read_table_rows(), Table.from_spec("p:d.t"))

        (read,) = session.reads
        assert read.table == "p:d.t"
        assert read.method is ReadMethod.DIRECT_READ
        assert list(read.read_options.selected_fields) == []
        assert read.read_options.row_restriction == ""

    def test_pushdown_verbatim(self, session: FakeSession) -> None:
        """Fields and restriction are carried in order, unchecked."""
        read_storage(
            session,
            ReadRequest.read_table_rows(),
            Table.from_spec("p:d.t"),
            ["name", "id", "no such column"],
            "id > 1",
        )

        (read,) = session.reads
        assert list(read.read_options.selected_fields) == ["name", "id", "no such column"]
        assert read.read_options.row_restriction == "id > 1"


class TestReadTable:
    """Tests for ``read_table``."""

    def test_reads_table(self, session: FakeSession) -> None:
        """A table read targets the table and keeps the export method."""
        read_table(session, ReadRequest.read_table_rows(), Table.from_spec("p.d.t"))

        (read,) = session.reads
        assert read.table == "p:d.t"
        assert read.method is ReadMethod.EXPORT
        assert read.validate is True
