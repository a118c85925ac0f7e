"""Interfaces of the pipeline framework consumed by this package.

The framework itself is not part of ``bq_io``.  A pipeline-construction
session only needs to expose the few capabilities below, which keeps the
dispatch logic testable with small fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from google.auth.credentials import Credentials


@dataclass(frozen=True)
class SessionOptions:
    """Cloud options of a session.

    Attributes:
        project: billing project used to run queries.
        credentials: credentials for the warehouse client; ``None`` means
            Application Default Credentials.
    """

    project: str | None
    credentials: Credentials | None = None


@runtime_checkable
class Dataset(Protocol):
    """Handle to a distributed dataset inside a pipeline.

    Methods:
        map: apply *fn* to every element, naming the step *name*.
        apply: apply a native transform with this dataset as input and
            return the raw result.
        context: the session that owns the dataset.
    """

    @property
    def context(self) -> PipelineSession: ...

    def map(self, fn: Callable[[Any], Any], name: str | None = None) -> Dataset: ...

    def apply(self, request: Any) -> Any: ...


@runtime_checkable
class PipelineSession(Protocol):
    """A pipeline-construction session.

    Methods:
        options: return project and credentials of the session.
        apply: apply a native read transform and return the raw result.
        wrap: turn a raw transform result into a ``Dataset``.
        on_close: register *fn* to run when the session tears down.
    """

    def options(self) -> SessionOptions: ...

    def apply(self, request: Any) -> Any: ...

    def wrap(self, raw: Any) -> Dataset: ...

    def on_close(self, fn: Callable[[], None]) -> None: ...


@runtime_checkable
class WriteResult(Protocol):
    """Raw result of a native BigQuery write.

    Attributes:
        failed_inserts: rows that could not be inserted.
        failed_inserts_with_err: insert errors with row, error and table.
    """

    failed_inserts: Iterable[Any]
    failed_inserts_with_err: Iterable[Any]
