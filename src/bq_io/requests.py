"""Immutable read and write requests handed to the pipeline framework.

A request only describes *what* to read or write.  Applying it is left to
the session (see ``bq_io.session``), which translates it into the
framework's native BigQuery transform.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from google.cloud import bigquery
from google.cloud.bigquery_storage_v1 import types as storage_types

from bq_io.sources import table_spec

TableReadOptions = storage_types.ReadSession.TableReadOptions


class ReadMethod(enum.Enum):
    """How the framework pulls the rows out of BigQuery."""

    EXPORT = "EXPORT"
    DIRECT_READ = "DIRECT_READ"


def table_read_options(
    selected_fields: Sequence[str] = (), row_restriction: str | None = None
) -> TableReadOptions:
    """Build Storage Read API options for column and row pushdown.

    Field names and the restriction are passed through verbatim; the
    warehouse validates them.
    """
    options = TableReadOptions(selected_fields=list(selected_fields))
    if row_restriction is not None:
        options.row_restriction = row_restriction
    return options


def _identity(row: Any) -> Any:
    return row


@dataclass(frozen=True)
class ReadRequest:
    """A typed read from either a table or a query."""

    parse_fn: Callable[[Any], Any] = _identity
    table: str | None = None
    query: str | None = None
    use_standard_sql: bool = False
    flatten_results: bool = True
    validate: bool = True
    method: ReadMethod = ReadMethod.EXPORT
    read_options: TableReadOptions | None = None

    @classmethod
    def read_table_rows(cls) -> ReadRequest:
        """A read producing raw JSON-like rows."""
        return cls()

    @classmethod
    def read(cls, parse_fn: Callable[[Any], Any]) -> ReadRequest:
        """A read applying *parse_fn* to every record it produces."""
        return cls(parse_fn=parse_fn)

    def from_table(self, table: str | bigquery.TableReference) -> ReadRequest:
        if isinstance(table, bigquery.TableReference):
            table = table_spec(table)
        return replace(self, table=table, query=None)

    def from_query(self, query: str) -> ReadRequest:
        return replace(self, query=query, table=None)

    def without_validation(self) -> ReadRequest:
        return replace(self, validate=False)

    def without_result_flattening(self) -> ReadRequest:
        return replace(self, flatten_results=False)

    def using_standard_sql(self) -> ReadRequest:
        return replace(self, use_standard_sql=True)

    def with_method(self, method: ReadMethod) -> ReadRequest:
        return replace(self, method=method)

    def with_read_options(self, options: TableReadOptions) -> ReadRequest:
        return replace(self, read_options=options)


class ExtendedErrorInfo(enum.Enum):
    """Which flavour of failed-insert side output a write exposes.

    ``DISABLED`` surfaces the failed rows themselves; ``ENABLED`` surfaces
    insert errors carrying the row, the error and the target table.
    """

    DISABLED = "disabled"
    ENABLED = "enabled"

    def failed_inserts(self, result: Any) -> Any:
        """Pick the matching side output from a native write result."""
        if self is ExtendedErrorInfo.ENABLED:
            return result.failed_inserts_with_err
        return result.failed_inserts


@dataclass(frozen=True)
class WriteRequest:
    """A write of rows to one table.

    Optional fields stay ``None`` until set explicitly, so the warehouse
    defaults apply to anything the caller did not ask for.
    """

    table: str
    schema: tuple[bigquery.SchemaField, ...] | None = None
    create_disposition: str | None = None
    write_disposition: str | None = None
    table_description: str | None = None
    time_partitioning: bigquery.TimePartitioning | None = None
    extended_error_info: bool = False
    _set: frozenset[str] = field(default=frozenset(), repr=False)

    @classmethod
    def to(cls, table: str | bigquery.TableReference) -> WriteRequest:
        if isinstance(table, bigquery.TableReference):
            table = table_spec(table)
        return cls(table=table)

    def _with(self, name: str, value: Any) -> WriteRequest:
        return replace(self, **{name: value}, _set=self._set | {name})

    def with_schema(self, schema: Sequence[bigquery.SchemaField]) -> WriteRequest:
        return self._with("schema", tuple(schema))

    def with_create_disposition(self, disposition: str) -> WriteRequest:
        return self._with("create_disposition", disposition)

    def with_write_disposition(self, disposition: str) -> WriteRequest:
        return self._with("write_disposition", disposition)

    def with_table_description(self, description: str) -> WriteRequest:
        return self._with("table_description", description)

    def with_time_partitioning(
        self, partitioning: bigquery.TimePartitioning
    ) -> WriteRequest:
        return self._with("time_partitioning", partitioning)

    def with_extended_error_info(self) -> WriteRequest:
        return self._with("extended_error_info", True)

    def additional_parameters(self) -> dict[str, Any]:
        """Return only the parameters that were set on this request."""
        return {name: getattr(self, name) for name in sorted(self._set)}
