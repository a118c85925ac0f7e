"""Tests for the ``bq-io`` command line."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from google.cloud import bigquery

from bq_io.cache import QueryCache, cache_key
from bq_io.cli import _build_parser, main
from bq_io.config import CONFIG_FILENAME

TABLE = bigquery.TableReference(bigquery.DatasetReference("p", "d"), "t")

CONFIG_TOML = """\
[project]
id = "proj"

[query]
cache_dir = "cache"
"""


@pytest.fixture
def config_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("BQ_IO_PROJECT", "BQ_IO_CACHE_ENABLED", "BQ_IO_CACHE_DIR"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / CONFIG_FILENAME
    path.write_text(CONFIG_TOML)
    return path


# ---------------------------------------------------------------------------
# CLI parsing
# ---------------------------------------------------------------------------


class TestCLIParsing:
    """Verify subcommand argument parsing."""

    def test_dialect(self) -> None:
        """``dialect`` takes the SQL and an optional ``--flatten``."""
        parser = _build_parser()
        args = parser.parse_args(["dialect", "SELECT 1"])

        assert args.command == "dialect"
        assert args.sql == "SELECT 1"
        assert args.flatten is False

    def test_run_flatten(self) -> None:
        """``run --flatten`` is accepted."""
        parser = _build_parser()
        args = parser.parse_args(["run", "SELECT 1", "--flatten"])

        assert args.command == "run"
        assert args.flatten is True

    def test_global_options(self) -> None:
        """``-v`` and ``--config`` come before the subcommand."""
        parser = _build_parser()
        args = parser.parse_args(["-v", "--config", "x.toml", "cache", "list"])

        assert args.verbose is True
        assert args.config == "x.toml"
        assert args.action == "list"

    def test_invalid_cache_action_rejected(self) -> None:
        """Unknown cache actions raise SystemExit."""
        parser = _build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["cache", "purge"])

    def test_missing_command_rejected(self) -> None:
        """A subcommand is required."""
        parser = _build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args([])


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    """Run subcommands end to end against mocked clients."""

    def test_cache_list(
        self, config_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """``cache list`` prints one key and table per line."""
        QueryCache(config_path.parent / "cache").put("SELECT 1", False, TABLE)

        main(["--config", str(config_path), "cache", "list"])

        out = capsys.readouterr().out
        assert out == f"{cache_key('SELECT 1', False)}\tp:d.t\n"

    def test_cache_clear(self, config_path: Path) -> None:
        """``cache clear`` empties the cache directory."""
        cache_dir = config_path.parent / "cache"
        QueryCache(cache_dir).put("SELECT 1", False, TABLE)

        main(["--config", str(config_path), "cache", "clear"])

        assert QueryCache(cache_dir).entries() == {}

    @patch("bq_io.cli.BigQueryClient")
    def test_run(
        self,
        mock_client_cls: MagicMock,
        config_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """``run`` prints the table holding the result."""
        mock_client_cls.return_value.run_query.return_value = TABLE

        main(["--config", str(config_path), "run", "SELECT 1"])

        mock_client_cls.return_value.run_query.assert_called_once_with("SELECT 1", False)
        assert capsys.readouterr().out == "p:d.t\n"

    @patch("bq_io.cli.BigQueryClient")
    def test_dialect(
        self,
        mock_client_cls: MagicMock,
        config_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """``dialect`` prints the detected dialect."""
        mock_client_cls.return_value.is_legacy_sql.return_value = True

        main(["--config", str(config_path), "dialect", "SELECT 1", "--flatten"])

        mock_client_cls.return_value.is_legacy_sql.assert_called_once_with(
            "SELECT 1", True
        )
        assert capsys.readouterr().out == "legacy\n"

    def test_missing_config_exits(self, tmp_path: Path) -> None:
        """An explicit missing config file exits with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "absent.toml"), "cache", "list"])

        assert exc_info.value.code == 1
