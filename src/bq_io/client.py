"""BigQuery client used while building pipelines.

Submits and waits for query jobs, detects the SQL dialect of a query and
reads tables back for taps.  Query results are cached (see
``bq_io.cache``) so identical queries are not re-run.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

from google.api_core.exceptions import BadRequest, NotFound
from google.auth.credentials import Credentials
from google.cloud import bigquery, bigquery_storage_v1
from google.cloud.bigquery_storage_v1 import types as storage_types

from bq_io.cache import QueryCache
from bq_io.config import ClientConfig, resolve_config
from bq_io.sources import table_spec

logger = logging.getLogger(__name__)

LEGACY_SQL_MARKER = "#legacysql"
STANDARD_SQL_MARKER = "#standardsql"

_STAGING_TABLE_EXPIRATION = timedelta(days=1)


def dialect_marker(sql: str) -> bool | None:
    """Return the dialect declared on the first line of *sql*.

    Returns:
        ``True`` for ``#legacysql``, ``False`` for ``#standardsql`` and
        ``None`` when the query declares no dialect.
    """
    first_line = sql.strip().split("\n", 1)[0].strip().lower()
    if first_line.startswith(LEGACY_SQL_MARKER):
        return True
    if first_line.startswith(STANDARD_SQL_MARKER):
        return False
    return None


class QueryJob:
    """A query job writing its result to ``table``.

    ``job`` is ``None`` when the result came from the cache.
    """

    def __init__(
        self,
        sql: str,
        flatten_results: bool,
        table: bigquery.TableReference,
        job: bigquery.QueryJob | None = None,
    ):
        self.sql = sql
        self.flatten_results = flatten_results
        self.table = table
        self.job = job
        self._done = job is None
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self._done

    def wait(self) -> bool:
        """Block until the job finishes.

        Returns:
            ``True`` if this call observed the job finishing, ``False`` if
            it had already finished.

        Raises:
            google.api_core.exceptions.GoogleAPICallError: If the job failed.
        """
        with self._lock:
            if self._done:
                return False
            assert self.job is not None  # Narrowing for type checker.
            self.job.result()
            self._done = True
            return True

    def __repr__(self) -> str:
        job_id = self.job.job_id if self.job is not None else "cached"
        return f"QueryJob({job_id} -> {table_spec(self.table)})"


class BigQueryClient:
    """Client for running queries and reading tables during construction."""

    def __init__(
        self,
        project: str | None,
        credentials: Credentials | None = None,
        *,
        config: ClientConfig | None = None,
        cache: QueryCache | None = None,
    ):
        """
        Initialize client with billing project and credentials.

        Parameters:
            project: billing BigQuery project; falls back to the project
                from *config*, then to the environment default.
            credentials: explicit credentials, or ``None`` for Application
                Default Credentials.
            config: client settings, defaults to ``ClientConfig()``.
            cache: query-result cache, defaults to one backed by
                ``config.cache_dir``.
        """
        self._config = config or ClientConfig()
        self._project = project or self._config.project
        self._credentials = credentials
        self._cache = cache if cache is not None else QueryCache(self._config.cache_dir)
        self._client: bigquery.Client | None = None
        self._read_client: bigquery_storage_v1.BigQueryReadClient | None = None
        self._clients_lock = threading.Lock()

    @classmethod
    def default_instance(cls) -> BigQueryClient:
        """Build a client from the discovered ``bq_io.toml`` and env."""
        config = resolve_config()
        return cls(config.project, config=config)

    @property
    def project(self) -> str | None:
        return self._project

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def client(self) -> bigquery.Client:
        """Lazy initialization of the BigQuery Client."""
        if self._client is None:
            with self._clients_lock:
                if self._client is None:
                    self._client = bigquery.Client(
                        project=self._project, credentials=self._credentials
                    )
        return self._client

    @property
    def read_client(self) -> bigquery_storage_v1.BigQueryReadClient:
        """Lazy initialization of the BigQueryReadClient."""
        if self._read_client is None:
            with self._clients_lock:
                if self._read_client is None:
                    self._read_client = bigquery_storage_v1.BigQueryReadClient(
                        credentials=self._credentials
                    )
        return self._read_client

    def is_cache_enabled(self) -> bool:
        return self._config.cache_enabled

    # --- dialect -----------------------------------------------------------

    def _dry_run(self, sql: str, use_legacy_sql: bool) -> bigquery.QueryJob:
        job_config = bigquery.QueryJobConfig(
            dry_run=True,
            use_query_cache=False,
            use_legacy_sql=use_legacy_sql,
        )
        return self.client.query(sql, job_config=job_config)

    def is_legacy_sql(self, sql: str, flatten_results: bool = False) -> bool:
        """Return whether *sql* is a legacy SQL query.

        An explicit ``#legacysql`` / ``#standardsql`` first line wins.
        Otherwise the query is dry-run in the preferred dialect (legacy
        when flattening is requested, standard otherwise) and then in the
        other one.

        Raises:
            google.api_core.exceptions.BadRequest: If the query is invalid
                in both dialects; the error of the first attempt is raised.
        """
        marker = dialect_marker(sql)
        if marker is not None:
            return marker

        preferred_legacy = flatten_results
        try:
            self._dry_run(sql, use_legacy_sql=preferred_legacy)
            legacy = preferred_legacy
        except BadRequest as first_error:
            try:
                self._dry_run(sql, use_legacy_sql=not preferred_legacy)
            except BadRequest:
                raise first_error from None
            legacy = not preferred_legacy

        logger.debug("dialect of query is %s", "legacy" if legacy else "standard")
        return legacy

    # --- query jobs --------------------------------------------------------

    def _staging_table(self) -> bigquery.TableReference:
        """Create the staging dataset if needed and name a fresh table."""
        dataset_ref = bigquery.DatasetReference(
            self.client.project,
            f"{self._config.staging_dataset}_{self._config.location.lower()}",
        )
        dataset = bigquery.Dataset(dataset_ref)
        dataset.location = self._config.location
        dataset.default_table_expiration_ms = int(
            _STAGING_TABLE_EXPIRATION.total_seconds() * 1000
        )
        self.client.create_dataset(dataset, exists_ok=True)

        now = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        table_id = f"bq_io_query_{now}_{uuid.uuid4().hex[:8]}"
        return dataset_ref.table(table_id)

    def _is_cache_valid(
        self, sql: str, flatten_results: bool, table: bigquery.TableReference
    ) -> bool:
        """Check that a cached result table is still usable for *sql*."""
        try:
            cached = self.client.get_table(table)
        except NotFound:
            logger.warning("cached table %s is gone", table_spec(table))
            return False

        legacy = self.is_legacy_sql(sql, flatten_results)
        dry_run = self._dry_run(sql, use_legacy_sql=legacy)
        for source in dry_run.referenced_tables or []:
            modified = self.client.get_table(source).modified
            if modified is not None and cached.created is not None:
                if modified > cached.created:
                    logger.warning(
                        "cached table %s is older than %s",
                        table_spec(table),
                        table_spec(source),
                    )
                    return False
        return True

    def new_query_job(self, sql: str, flatten_results: bool = False) -> QueryJob:
        """Submit *sql* unless an up-to-date cached result exists.

        The job runs asynchronously; use ``wait_for_jobs`` to block on it.

        Args:
            sql: the query text.
            flatten_results: flatten nested and repeated fields (legacy
                SQL only).

        Returns:
            A ``QueryJob`` whose ``table`` will hold the query result.
        """
        cached = self._cache.get(sql, flatten_results)
        if cached is not None:
            if self._is_cache_valid(sql, flatten_results, cached):
                logger.info("query cache hit: %s", table_spec(cached))
                return QueryJob(sql, flatten_results, cached)
            self._cache.invalidate(sql, flatten_results)

        legacy = self.is_legacy_sql(sql, flatten_results)
        destination = self._staging_table()
        job_config = bigquery.QueryJobConfig(
            destination=destination,
            use_legacy_sql=legacy,
            priority=self._config.priority,
            write_disposition=bigquery.WriteDisposition.WRITE_EMPTY,
        )
        if legacy:
            job_config.allow_large_results = True
            job_config.flatten_results = flatten_results

        job = self.client.query(sql, job_config=job_config)
        logger.info(
            "query cache miss, submitted job %s -> %s",
            job.job_id,
            table_spec(destination),
        )
        return QueryJob(sql, flatten_results, destination, job)

    def wait_for_jobs(self, *jobs: QueryJob) -> None:
        """Wait for *jobs* to finish and record their results in the cache.

        Jobs that already finished are skipped, so calling this twice for
        the same job is harmless.
        """
        for job in jobs:
            if job.done:
                continue
            logger.info("waiting for %r... start", job)
            if job.wait():
                self._log_bytes_processed(job)
                self._cache.put(job.sql, job.flatten_results, job.table)
            logger.info("waiting for %r... ok", job)

    @staticmethod
    def _log_bytes_processed(job: QueryJob) -> None:
        if job.job is None or job.job.total_bytes_processed is None:
            return
        logger.info(
            "%r processed %.3f GB", job, job.job.total_bytes_processed / 1e9
        )

    def run_query(
        self, sql: str, flatten_results: bool = False
    ) -> bigquery.TableReference:
        """Run *sql* synchronously and return the table with its result."""
        job = self.new_query_job(sql, flatten_results)
        self.wait_for_jobs(job)
        return job.table

    # --- reading back ------------------------------------------------------

    def list_rows(self, table: bigquery.TableReference) -> Iterator[dict[str, Any]]:
        """Yield every row of *table* as a dict."""
        for row in self.client.list_rows(table):
            yield dict(row.items())

    def read_storage_rows(
        self,
        table: bigquery.TableReference,
        read_options: storage_types.ReadSession.TableReadOptions | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield rows of *table* through the Storage Read API."""
        project = table.project or self.client.project
        requested = storage_types.ReadSession(
            table=(
                f"projects/{project}/datasets/{table.dataset_id}"
                f"/tables/{table.table_id}"
            ),
            data_format=storage_types.DataFormat.ARROW,
        )
        if read_options is not None:
            requested.read_options = read_options

        session = self.read_client.create_read_session(
            parent=f"projects/{self.client.project}",
            read_session=requested,
            max_stream_count=1,
        )
        logger.debug("read session %s: %d streams", session.name, len(session.streams))
        for stream in session.streams:
            for row in self.read_client.read_rows(stream.name).rows(session):
                yield {name: value.as_py() for name, value in row.items()}
