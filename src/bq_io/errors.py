"""Exceptions raised while assembling BigQuery reads and writes."""

from __future__ import annotations


class UnsupportedOperationError(RuntimeError):
    """The caller asked for something this IO cannot do."""


class ReadOnlySourceError(UnsupportedOperationError):
    """Write attempted on a query- or storage-backed source."""
