"""Cache mapping query text to the table holding its result.

Entries live in memory for the process and, when a directory is
configured, are mirrored to disk so later processes can reuse them:

    $cache_dir/<sha256(flatten + sql)>.table

Each file holds the ``project:dataset.table`` spec of the result table.
Readers and writers take a ``FileLock`` on the entry so concurrent
processes never observe a half-written file.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from pathlib import Path
from typing import Final

from filelock import FileLock
from google.cloud import bigquery

from bq_io.sources import parse_table_spec, table_spec

logger = logging.getLogger(__name__)

CACHE_FILE_SUFFIX: Final[str] = ".table"
CACHE_LOCK_SUFFIX: Final[str] = ".lock"


def cache_key(sql: str, flatten_results: bool) -> str:
    """Return the cache key for a query and its flatten flag."""
    payload = f"{int(flatten_results)}\n{sql}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class QueryCache:
    """Query-result cache shared by every job of a client."""

    def __init__(self, cache_dir: str | Path | None = None):
        """
        Initialize the cache.

        Parameters:
            cache_dir: Directory for the on-disk mirror.  ``None`` keeps
                the cache in memory only.
        """
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self._entries: dict[str, bigquery.TableReference] = {}
        self._lock = threading.Lock()

    def _file_path(self, key: str) -> Path | None:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{key}{CACHE_FILE_SUFFIX}"

    @staticmethod
    def _read_spec(path: Path) -> str | None:
        """Read an entry file under its lock; ``None`` if it is missing or empty."""
        if not path.is_file():
            return None
        with FileLock(path.with_suffix(CACHE_LOCK_SUFFIX)):
            try:
                spec = path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                return None
        return spec or None

    def get(self, sql: str, flatten_results: bool) -> bigquery.TableReference | None:
        """Return the cached result table for *sql*, or ``None``."""
        key = cache_key(sql, flatten_results)
        with self._lock:
            if key in self._entries:
                return self._entries[key]

        path = self._file_path(key)
        if path is None:
            return None
        spec = self._read_spec(path)
        if spec is None:
            return None
        ref = parse_table_spec(spec)
        with self._lock:
            self._entries.setdefault(key, ref)
        return ref

    def put(
        self, sql: str, flatten_results: bool, table: bigquery.TableReference
    ) -> None:
        """Record *table* as the result of *sql*."""
        key = cache_key(sql, flatten_results)
        with self._lock:
            self._entries[key] = table

        path = self._file_path(key)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(path.with_suffix(CACHE_LOCK_SUFFIX)):
            path.write_text(table_spec(table) + "\n", encoding="utf-8")
        logger.debug("cached %s -> %s", key[:12], table_spec(table))

    def invalidate(self, sql: str, flatten_results: bool) -> None:
        """Drop the entry for *sql* from memory and disk."""
        key = cache_key(sql, flatten_results)
        with self._lock:
            self._entries.pop(key, None)
        path = self._file_path(key)
        if path is not None and path.is_file():
            with FileLock(path.with_suffix(CACHE_LOCK_SUFFIX)):
                path.unlink(missing_ok=True)

    def entries(self) -> dict[str, str]:
        """Return all known entries as ``{key: table_spec}``."""
        with self._lock:
            result = {key: table_spec(ref) for key, ref in self._entries.items()}
        if self.cache_dir is not None and self.cache_dir.is_dir():
            for path in sorted(self.cache_dir.glob(f"*{CACHE_FILE_SUFFIX}")):
                if path.stem in result:
                    continue
                spec = self._read_spec(path)
                if spec is not None:
                    result[path.stem] = spec
        return result

    def clear(self) -> int:
        """Remove every entry and return how many were removed."""
        removed = set()
        with self._lock:
            removed.update(self._entries)
            self._entries.clear()
        if self.cache_dir is not None and self.cache_dir.is_dir():
            for path in self.cache_dir.glob(f"*{CACHE_FILE_SUFFIX}"):
                removed.add(path.stem)
                path.unlink(missing_ok=True)
            for path in self.cache_dir.glob(f"*{CACHE_LOCK_SUFFIX}"):
                path.unlink(missing_ok=True)
        return len(removed)
