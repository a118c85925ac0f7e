"""Tests for ``bq_io.sources``."""

from __future__ import annotations

import pytest
from google.cloud import bigquery

from bq_io.sources import Query, Table, parse_table_spec, source_id, table_spec


class TestParseTableSpec:
    """Tests for ``parse_table_spec``."""

    def test_legacy_spec(self) -> None:
        """``project:dataset.table`` is parsed."""
        ref = parse_table_spec("proj:ds.tbl")

        assert (ref.project, ref.dataset_id, ref.table_id) == ("proj", "ds", "tbl")

    def test_standard_spec(self) -> None:
        """``project.dataset.table`` is parsed."""
        ref = parse_table_spec("my-project.ds.tbl")

        assert (ref.project, ref.dataset_id, ref.table_id) == ("my-project", "ds", "tbl")

    def test_domain_scoped_project(self) -> None:
        """Domain-scoped projects keep their colon."""
        ref = parse_table_spec("example.com:proj:ds.tbl")

        assert ref.project == "example.com:proj"
        assert ref.table_id == "tbl"

    def test_dataset_only(self) -> None:
        """``dataset.table`` leaves the project empty."""
        ref = parse_table_spec("ds.tbl")

        assert ref.project == ""
        assert ref.dataset_id == "ds"

    def test_invalid_spec(self) -> None:
        """A bare name is rejected."""
        with pytest.raises(ValueError, match="Invalid table spec"):
            parse_table_spec("tbl")


class TestTable:
    """Tests for ``Table``."""

    def test_from_spec_is_canonical(self) -> None:
        """Both spec styles give the same canonical spec."""
        assert Table.from_spec("proj.ds.tbl").spec == "proj:ds.tbl"
        assert Table.from_spec("proj:ds.tbl").spec == "proj:ds.tbl"

    def test_from_ref(self) -> None:
        """A reference is rendered as ``project:dataset.table``."""
        ref = bigquery.TableReference(bigquery.DatasetReference("p", "d"), "t")
        table = Table.from_ref(ref)

        assert table.spec == "p:d.t"
        assert table.ref is ref

    def test_equality_and_hash(self) -> None:
        """Tables built differently but naming the same table are equal."""
        ref = bigquery.TableReference(bigquery.DatasetReference("p", "d"), "t")
        by_ref = Table.from_ref(ref)
        by_spec = Table.from_spec("p.d.t")

        assert by_ref == by_spec
        assert {by_ref: 1}[by_spec] == 1

    def test_table_spec_without_project(self) -> None:
        """Render a reference without project as ``dataset.table``."""
        assert table_spec(parse_table_spec("ds.tbl")) == "ds.tbl"


class TestQuery:
    """Tests for ``Query``."""

    def test_identity_is_sql(self) -> None:
        """Queries are equal when their SQL is equal."""
        assert Query.from_string("SELECT 1") == Query("SELECT 1")
        assert Query.from_string("SELECT 1") != Query("SELECT 2")

    def test_source_id(self) -> None:
        """``source_id`` gives the spec of tables and the SQL of queries."""
        assert source_id(Table.from_spec("p:d.t")) == "p:d.t"
        assert source_id(Query.from_string("SELECT 1")) == "SELECT 1"
