"""Record types bound to BigQuery rows.

A record type registers how its instances convert to and from BigQuery
rows, its table schema, and at most one source it is read from:

    @bigquery_type(table="my-project:ds.events", schema=[...])
    @dataclass
    class Event:
        id: int
        name: str

Dataclasses get ``from_table_row`` / ``to_table_row`` for free; other
classes pass them explicitly.
"""

from __future__ import annotations

import dataclasses
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from google.cloud import bigquery

T = TypeVar("T")

Row = Mapping[str, Any]


@dataclass(frozen=True)
class StorageOptions:
    """Storage Read API source declared by a record type."""

    table: str
    selected_fields: tuple[str, ...] = ()
    row_restriction: str | None = None


@dataclass(frozen=True)
class BigQueryType(Generic[T]):
    """Conversions and source metadata of one record type."""

    record_type: type[T]
    from_table_row: Callable[[Row], T]
    to_table_row: Callable[[T], dict[str, Any]]
    from_avro: Callable[[Row], T]
    schema: tuple[bigquery.SchemaField, ...] = ()
    table_description: str | None = None
    table: str | None = None
    query: str | None = None
    storage: StorageOptions | None = field(default=None)

    @property
    def is_table(self) -> bool:
        return self.table is not None

    @property
    def is_query(self) -> bool:
        return self.query is not None

    @property
    def is_storage(self) -> bool:
        return self.storage is not None


_registry: dict[type, BigQueryType[Any]] = {}
_registry_lock = threading.Lock()


def _dataclass_from_row(record_type: type[T]) -> Callable[[Row], T]:
    names = {f.name for f in dataclasses.fields(record_type)}

    def from_row(row: Row) -> T:
        return record_type(**{k: v for k, v in row.items() if k in names})

    return from_row


def register(
    record_type: type[T],
    *,
    from_table_row: Callable[[Row], T] | None = None,
    to_table_row: Callable[[T], dict[str, Any]] | None = None,
    from_avro: Callable[[Row], T] | None = None,
    schema: Sequence[bigquery.SchemaField] = (),
    table_description: str | None = None,
    table: str | None = None,
    query: str | None = None,
    storage: StorageOptions | None = None,
) -> BigQueryType[T]:
    """Register the BigQuery binding of *record_type*.

    Raises:
        ValueError: If conversions are missing for a non-dataclass type.
    """
    if from_table_row is None or to_table_row is None:
        if not dataclasses.is_dataclass(record_type):
            raise ValueError(
                f"{record_type.__name__} is not a dataclass: "
                "pass from_table_row and to_table_row"
            )
        from_table_row = from_table_row or _dataclass_from_row(record_type)
        to_table_row = to_table_row or dataclasses.asdict

    bqt = BigQueryType(
        record_type=record_type,
        from_table_row=from_table_row,
        to_table_row=to_table_row,
        from_avro=from_avro or from_table_row,
        schema=tuple(schema),
        table_description=table_description,
        table=table,
        query=query,
        storage=storage,
    )
    with _registry_lock:
        _registry[record_type] = bqt
    return bqt


def bigquery_type(**kwargs: Any) -> Callable[[type[T]], type[T]]:
    """Class decorator form of ``register``."""

    def decorate(record_type: type[T]) -> type[T]:
        register(record_type, **kwargs)
        return record_type

    return decorate


def lookup(record_type: type[T]) -> BigQueryType[T]:
    """Return the binding of *record_type*.

    Raises:
        ValueError: If *record_type* was never registered.
    """
    with _registry_lock:
        bqt = _registry.get(record_type)
    if bqt is None:
        raise ValueError(
            f"{record_type.__name__} has no BigQuery binding; register it with "
            "bigquery_type(table=...), bigquery_type(query=...) or "
            "bigquery_type(storage=...)"
        )
    return bqt


def unregister(record_type: type) -> None:
    with _registry_lock:
        _registry.pop(record_type, None)
