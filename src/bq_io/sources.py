"""Source descriptors identifying a logical BigQuery read.

A source is either a ``Table`` or a ``Query``.  Both are frozen values so
they can be used as dictionary keys and as test identifiers for the whole
lifetime of a pipeline-construction session.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from google.cloud import bigquery

# project:dataset.table, project.dataset.table or dataset.table
_SPEC_RE = re.compile(
    r"^(?:(?P<project>[\w.:-]+?)[:.])?(?P<dataset>\w+)\.(?P<table>[\w$-]+)$"
)


def parse_table_spec(spec: str) -> bigquery.TableReference:
    """Parse a table spec into a ``TableReference``.

    Args:
        spec: ``project:dataset.table``, ``project.dataset.table`` or
            ``dataset.table`` (the project is then left empty and resolved
            by the warehouse client).

    Returns:
        The parsed table reference.

    Raises:
        ValueError: If *spec* does not look like a table spec.
    """
    match = _SPEC_RE.match(spec.strip())
    if match is None:
        raise ValueError(f"Invalid table spec '{spec}'")
    dataset = bigquery.DatasetReference(match["project"] or "", match["dataset"])
    return bigquery.TableReference(dataset, match["table"])


def table_spec(ref: bigquery.TableReference) -> str:
    """Render *ref* in the canonical ``project:dataset.table`` form."""
    if ref.project:
        return f"{ref.project}:{ref.dataset_id}.{ref.table_id}"
    return f"{ref.dataset_id}.{ref.table_id}"


@dataclass(frozen=True)
class Table:
    """A BigQuery table, given either as a reference or as a spec string."""

    spec: str
    ref: bigquery.TableReference = field(compare=False, hash=False, repr=False)

    @classmethod
    def from_ref(cls, ref: bigquery.TableReference) -> Table:
        return cls(spec=table_spec(ref), ref=ref)

    @classmethod
    def from_spec(cls, spec: str) -> Table:
        ref = parse_table_spec(spec)
        return cls(spec=table_spec(ref), ref=ref)

    def __str__(self) -> str:
        return self.spec


@dataclass(frozen=True)
class Query:
    """A SQL query; its identity is the query text."""

    underlying: str

    @classmethod
    def from_string(cls, sql: str) -> Query:
        return cls(underlying=sql)

    def __str__(self) -> str:
        return self.underlying


Source = Table | Query


def source_id(source: Source) -> str:
    """Return the string that identifies *source* in logs and tests."""
    if isinstance(source, Table):
        return source.spec
    return source.underlying
