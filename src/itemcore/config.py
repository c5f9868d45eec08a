"""itemcore configuration loading and validation.

Reads itemcore.toml from a config directory, parses all sections, and returns
a validated CoreConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from itemcore.database.query import DIALECTS
from itemcore.db import _normalize_schema_name

CONFIG_FILENAME = "itemcore.toml"

# ${VAR_NAME}, where the name is a shell-style identifier
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when itemcore configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [itemcore.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    schema: str | None = None
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class CoreConfig:
    """Parsed itemcore.toml."""

    database: DatabaseConfig
    dialect: str = "postgres"
    service_name: str | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR}`` references throughout a parsed TOML tree.

    Raises ConfigError naming every variable that is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    missing = [name for name in _ENV_VAR_PATTERN.findall(s) if name not in os.environ]
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)}"
            f" (original: {s!r})"
        )
    return _ENV_VAR_PATTERN.sub(lambda m: os.environ[m.group(1)], s)


def _table(data: dict, key: str, path: str) -> dict:
    section = data.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return section


def _parse_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{path}.{key} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{path}.{key} must not be negative")
    return value


def _optional_str(section: dict, key: str) -> str | None:
    value = section.get(key)
    return None if value is None else str(value)


def _parse_schema(raw: Any) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError("database.schema must be a non-empty string when set")
    try:
        return _normalize_schema_name(raw)
    except ValueError:
        raise ConfigError(
            f"Invalid database.schema: {raw!r}. Expected a valid SQL identifier-style value."
        ) from None


def _parse_database(section: Any) -> DatabaseConfig:
    if not isinstance(section, dict):
        raise ConfigError("Missing [database] section in config")

    name = str(section.get("name", "")).strip()
    if not name:
        raise ConfigError("Missing required field: database.name")

    min_pool_size = _parse_int(section, "min_pool_size", 2, "database")
    max_pool_size = _parse_int(section, "max_pool_size", 10, "database")
    if max_pool_size < 1 or min_pool_size > max_pool_size:
        raise ConfigError(
            f"database.min_pool_size ({min_pool_size}) must not exceed "
            f"database.max_pool_size ({max_pool_size}), which must be at least 1"
        )

    return DatabaseConfig(
        name=name,
        host=str(section.get("host", "localhost")),
        port=_parse_int(section, "port", 5432, "database"),
        user=str(section.get("user", "postgres")),
        password=str(section.get("password", "postgres")),
        schema=_parse_schema(section.get("schema")),
        ssl=_optional_str(section, "ssl"),
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
    )


def _parse_logging(section: dict) -> LoggingConfig:
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid itemcore.logging.format: {log_format!r}. Must be 'text' or 'json'"
        )
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=_optional_str(section, "log_root"),
    )


def load_config(config_dir: Path) -> CoreConfig:
    """Load ``itemcore.toml`` from *config_dir*.

    ``${VAR}`` references are substituted before validation.  Any missing
    file, bad TOML or invalid field raises :class:`ConfigError`.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME
    if not toml_path.is_file():
        raise ConfigError(f"Config file not found: {toml_path}")
    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)
    core = _table(data, "itemcore", "itemcore")

    dialect = str(core.get("dialect", "postgres")).strip().lower()
    if dialect not in DIALECTS:
        raise ConfigError(
            f"Invalid itemcore.dialect: {dialect!r}. Must be one of: {', '.join(sorted(DIALECTS))}"
        )

    service_name = core.get("service_name")
    if service_name is not None and not isinstance(service_name, str):
        raise ConfigError("itemcore.service_name must be a string when set")

    return CoreConfig(
        database=_parse_database(data.get("database")),
        dialect=dialect,
        service_name=service_name,
        logging=_parse_logging(_table(core, "logging", "itemcore.logging")),
    )
