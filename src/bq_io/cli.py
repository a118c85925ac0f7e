"""CLI entrypoint for bq-io."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from bq_io.cache import QueryCache
from bq_io.client import BigQueryClient
from bq_io.config import ClientConfig, resolve_config
from bq_io.sources import table_spec


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with ``dialect``, ``run`` and ``cache``."""
    parser = argparse.ArgumentParser(
        prog="bq-io",
        description="Inspect BigQuery queries and the bq-io query cache.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to bq_io.toml (default: auto-discover from CWD).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- dialect ---
    dialect_parser = subparsers.add_parser(
        "dialect",
        help="Print whether a query is legacy or standard SQL.",
    )
    dialect_parser.add_argument("sql", type=str, help="Query text.")
    dialect_parser.add_argument(
        "--flatten",
        action="store_true",
        help="Prefer legacy SQL when detecting the dialect.",
    )

    # --- run ---
    run_parser = subparsers.add_parser(
        "run",
        help="Run a query and print the table holding its result.",
    )
    run_parser.add_argument("sql", type=str, help="Query text.")
    run_parser.add_argument(
        "--flatten",
        action="store_true",
        help="Flatten nested and repeated fields (legacy SQL only).",
    )

    # --- cache ---
    cache_parser = subparsers.add_parser(
        "cache",
        help="Inspect or clear the on-disk query cache.",
    )
    cache_parser.add_argument("action", choices=["list", "clear"])

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint.

    Args:
        argv: Command-line arguments.  Defaults to ``sys.argv[1:]``.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )

    config = _resolve_config(args)

    if args.command == "dialect":
        _handle_dialect(args, config)

    if args.command == "run":
        _handle_run(args, config)

    if args.command == "cache":
        _handle_cache(args, config)


def _resolve_config(args: argparse.Namespace) -> ClientConfig:
    """Load config from the ``--config`` path or by discovery."""
    path = Path(args.config).resolve() if args.config else None
    try:
        return resolve_config(path)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        sys.exit(1)


def _handle_dialect(args: argparse.Namespace, config: ClientConfig) -> None:
    """Handle the ``dialect`` subcommand."""
    client = BigQueryClient(config.project, config=config)
    legacy = client.is_legacy_sql(args.sql, args.flatten)
    print("legacy" if legacy else "standard")


def _handle_run(args: argparse.Namespace, config: ClientConfig) -> None:
    """Handle the ``run`` subcommand."""
    client = BigQueryClient(config.project, config=config)
    table = client.run_query(args.sql, args.flatten)
    print(table_spec(table))


def _handle_cache(args: argparse.Namespace, config: ClientConfig) -> None:
    """Handle the ``cache`` subcommand."""
    cache = QueryCache(config.cache_dir)
    if args.action == "list":
        for key, spec in sorted(cache.entries().items()):
            print(f"{key}\t{spec}")
        return

    removed = cache.clear()
    logging.info("Removed %d cache entries from %s", removed, config.cache_dir)
