"""Read dispatch: pick how a BigQuery source is read into a pipeline.

Three strategies exist:

1. a plain table scan (``read_table``);

2. a query, either extracted from the temporary table of a cached query
   job or handed to the framework as SQL (``read_query``);

3. a Storage Read API read with column and row pushdown
   (``read_storage``).

Query dispatch needs a ``BigQueryClient``.  ``ClientCache`` keeps exactly
one client per session so every read of a session shares credentials and
connections.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence

from google.cloud import bigquery

from bq_io.client import BigQueryClient, dialect_marker
from bq_io.config import resolve_config
from bq_io.requests import ReadMethod, ReadRequest, table_read_options
from bq_io.session import Dataset, PipelineSession
from bq_io.sources import Table

logger = logging.getLogger(__name__)

ClientFactory = Callable[[PipelineSession], BigQueryClient]


def client_from_session(session: PipelineSession) -> BigQueryClient:
    """Build a client from the project and credentials of *session*."""
    options = session.options()
    config = resolve_config()
    return BigQueryClient(options.project, options.credentials, config=config)


class _SessionEntry:
    """Client slot of one session.

    Holding the session keeps its id from being reused while the entry
    lives.
    """

    def __init__(self, session: PipelineSession):
        self.session = session
        self.client: BigQueryClient | None = None
        self.lock = threading.Lock()


class ClientCache:
    """One ``BigQueryClient`` per pipeline session.

    Clients are never evicted.  Each session has its own lock, so racing
    first calls for one session build exactly one client while other
    sessions are not blocked.  Building a client does no network I/O.
    """

    def __init__(self, factory: ClientFactory = client_from_session):
        self._factory = factory
        self._entries: dict[int, _SessionEntry] = {}
        self._lock = threading.Lock()

    def client_for(self, session: PipelineSession) -> BigQueryClient:
        """Return the client of *session*, creating it on first use."""
        key = id(session)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _SessionEntry(session)

        with entry.lock:
            if entry.client is None:
                entry.client = self._factory(session)
            return entry.client

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.client is not None)


def read_query(
    session: PipelineSession,
    clients: ClientCache,
    request: ReadRequest,
    sql: str,
    flatten_results: bool = False,
) -> Dataset:
    """Read the result of *sql* into the pipeline.

    With the query cache enabled the query runs as a job right away and
    the pipeline reads its destination table; the session waits for the
    job when it closes.  Otherwise the SQL is handed to the framework,
    flagged with its dialect.

    Args:
        session: the pipeline-construction session.
        clients: per-session client cache.
        request: base read request (carries the row parser).
        sql: the query text.
        flatten_results: flatten nested and repeated fields.

    Returns:
        The dataset holding the query result.
    """
    client = clients.client_for(session)

    if client.is_cache_enabled():
        job = client.new_query_job(sql, flatten_results)
        session.on_close(lambda: client.wait_for_jobs(job))
        read = request.from_table(job.table).without_validation()
        logger.debug("reading query through %r", job)
    else:
        legacy = dialect_marker(sql)
        if legacy is None:
            legacy = client.is_legacy_sql(sql, flatten_results)
        read = request.from_query(sql)
        if not legacy:
            read = read.using_standard_sql()
            if not flatten_results:
                read = read.without_result_flattening()
        logger.debug(
            "reading query directly (%s SQL, flatten=%s)",
            "legacy" if legacy else "standard",
            flatten_results,
        )

    return session.wrap(session.apply(read))


def read_storage(
    session: PipelineSession,
    request: ReadRequest,
    table: Table,
    selected_fields: Sequence[str] = (),
    row_restriction: str | None = None,
) -> Dataset:
    """Read *table* with the Storage Read API.

    Args:
        session: the pipeline-construction session.
        request: base read request.
        table: table to read.
        selected_fields: columns to read; empty reads every column.
        row_restriction: SQL predicate filtering rows, or ``None``.
    """
    read = (
        request.from_table(table.spec)
        .with_method(ReadMethod.DIRECT_READ)
        .with_read_options(table_read_options(selected_fields, row_restriction))
    )
    logger.debug("direct read of %s", table.spec)
    return session.wrap(session.apply(read))


def read_table(
    session: PipelineSession,
    request: ReadRequest,
    table: bigquery.TableReference | Table,
) -> Dataset:
    """Read every row of *table*."""
    if isinstance(table, Table):
        table = table.ref
    return session.wrap(session.apply(request.from_table(table)))

