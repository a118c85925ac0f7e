"""TOML configuration loading and config file discovery."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path

CONFIG_FILENAME = "bq_io.toml"

DEFAULT_CACHE_DIR = ".bq_io/cache"
DEFAULT_LOCATION = "US"
DEFAULT_PRIORITY = "INTERACTIVE"
DEFAULT_STAGING_DATASET = "bq_io_staging"

_PRIORITIES = ("INTERACTIVE", "BATCH")
_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclass(frozen=True)
class ClientConfig:
    """Settings for the BigQuery client used while building pipelines."""

    project: str | None = None
    location: str = DEFAULT_LOCATION
    cache_enabled: bool = True
    cache_dir: Path = Path(DEFAULT_CACHE_DIR)
    staging_dataset: str = DEFAULT_STAGING_DATASET
    priority: str = DEFAULT_PRIORITY


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"Invalid boolean for {name}: '{raw}'")


def _check_priority(priority: str) -> str:
    priority = priority.upper()
    if priority not in _PRIORITIES:
        raise ValueError(
            f"Invalid query priority '{priority}' (expected one of {_PRIORITIES})"
        )
    return priority


def load_config(path: Path) -> ClientConfig:
    """Read and parse a ``bq_io.toml`` file.

    Relative ``cache_dir`` values are resolved against the directory
    holding the config file.

    Args:
        path: Absolute or relative path to the TOML config file.

    Returns:
        Parsed ``ClientConfig``.

    Raises:
        FileNotFoundError: If *path* does not exist.
        KeyError: If ``[project]`` is present without an ``id``.
        ValueError: If the query priority is not recognised.
    """
    with path.open("rb") as fh:
        raw = tomllib.load(fh)

    config = ClientConfig()
    project_raw = raw.get("project")
    if project_raw is not None:
        config = replace(
            config,
            project=project_raw["id"],
            location=project_raw.get("location", DEFAULT_LOCATION),
        )

    query_raw = raw.get("query", {})
    cache_dir = Path(query_raw.get("cache_dir", DEFAULT_CACHE_DIR))
    if not cache_dir.is_absolute():
        cache_dir = path.resolve().parent / cache_dir

    return replace(
        config,
        cache_enabled=bool(query_raw.get("cache_enabled", True)),
        cache_dir=cache_dir,
        staging_dataset=query_raw.get("staging_dataset", DEFAULT_STAGING_DATASET),
        priority=_check_priority(query_raw.get("priority", DEFAULT_PRIORITY)),
    )


def discover_config(start: Path | None = None) -> Path:
    """Walk from *start* upward looking for ``bq_io.toml``.

    Args:
        start: Directory to begin the search.  Defaults to the current
            working directory.

    Returns:
        Absolute path to the discovered config file.

    Raises:
        FileNotFoundError: If no ``bq_io.toml`` is found between *start*
            and the filesystem root.
    """
    current = (start or Path.cwd()).resolve()

    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate

        parent = current.parent
        if parent == current:
            break
        current = parent

    msg = f"{CONFIG_FILENAME} not found (searched from {start or Path.cwd()})"
    raise FileNotFoundError(msg)


def apply_env(config: ClientConfig, env: dict[str, str] | None = None) -> ClientConfig:
    """Override *config* with ``BQ_IO_*`` environment variables.

    Args:
        config: Base configuration.
        env: Mapping to read from.  Defaults to ``os.environ``.

    Returns:
        A new ``ClientConfig`` with the overrides applied.
    """
    env = os.environ if env is None else env
    if "BQ_IO_PROJECT" in env:
        config = replace(config, project=env["BQ_IO_PROJECT"])
    if "BQ_IO_LOCATION" in env:
        config = replace(config, location=env["BQ_IO_LOCATION"])
    if "BQ_IO_CACHE_ENABLED" in env:
        config = replace(
            config,
            cache_enabled=_parse_bool("BQ_IO_CACHE_ENABLED", env["BQ_IO_CACHE_ENABLED"]),
        )
    if "BQ_IO_CACHE_DIR" in env:
        config = replace(config, cache_dir=Path(env["BQ_IO_CACHE_DIR"]))
    if "BQ_IO_PRIORITY" in env:
        config = replace(config, priority=_check_priority(env["BQ_IO_PRIORITY"]))
    return config


def resolve_config(
    path: Path | None = None, env: dict[str, str] | None = None
) -> ClientConfig:
    """Load the effective client configuration.

    Uses *path* when given, otherwise the discovered ``bq_io.toml``, and
    falls back to defaults when no file is found.  Environment variables
    are applied last.
    """
    if path is None:
        try:
            path = discover_config()
        except FileNotFoundError:
            return apply_env(ClientConfig(), env)
    return apply_env(load_config(path), env)
