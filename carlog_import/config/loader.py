from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
import yaml
from dotenv import load_dotenv
from jsonschema.exceptions import ValidationError

"""Config loader.

Responsibilities:
- Load YAML config (default ``config/carlog.yml``)
- Validate against ``config_schema.json`` shipped next to this module
- Apply defaults for optional keys
- Resolve the PostgreSQL DSN from environment / ``.env`` / config
"""

__all__ = [
    "SCHEMA_PATH",
    "DEFAULT_CONFIG_PATH",
    "ConfigError",
    "StoreConfig",
    "DatabaseConfig",
    "CarlogConfig",
    "load_config",
    "resolve_dsn",
]

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")
DEFAULT_CONFIG_PATH = Path("config/carlog.yml")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class StoreConfig:
    backend: str = "json"
    path: str = "./data/records.json"


@dataclass(frozen=True)
class DatabaseConfig:
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class CarlogConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    sheet_match: str = "car log"
    header_keywords: tuple[str, ...] = ("car", "status", "location", "date")
    batch_size: int = 200
    max_workers: int = 8
    keep_na_strings: list[str] | None = None
    timezone: str = "UTC"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @property
    def zone(self) -> tzinfo:
        """Zone used to decide the calendar year of allocated keys."""
        return _zone(self.timezone)


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing or not valid JSON, or the config
            data violates the schema (wrong types, unknown backend, ...)
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def load_config(path: Path) -> CarlogConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config validation failed: top level must be a mapping")

    _validate_config_schema(data)
    if "timezone" in data:
        try:
            _zone(data["timezone"])
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"unknown timezone: {data['timezone']}") from e

    defaults = CarlogConfig()
    store_raw = data.get("store") or {}
    store = StoreConfig(
        backend=store_raw.get("backend", defaults.store.backend),
        path=store_raw.get("path", defaults.store.path),
    )
    db_raw = data.get("database") or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    keywords = data.get("header_keywords")
    return CarlogConfig(
        store=store,
        sheet_match=data.get("sheet_match", defaults.sheet_match),
        header_keywords=tuple(keywords) if keywords else defaults.header_keywords,
        batch_size=data.get("batch_size", defaults.batch_size),
        max_workers=data.get("max_workers", defaults.max_workers),
        keep_na_strings=data.get("keep_na_strings"),
        timezone=data.get("timezone", defaults.timezone),
        database=db,
    )


def resolve_dsn(db: DatabaseConfig) -> str:
    """Build a libpq connection string.

    Precedence: DATABASE_URL / PGDSN, then PG* variables, then the
    ``database`` config section. ``.env`` is loaded first and overrides
    the process environment.

    Raises:
        ConfigError: no connection parameters available at all
    """
    load_dotenv(dotenv_path=Path(".env"), override=True)
    url = os.getenv("DATABASE_URL") or os.getenv("PGDSN")
    if url:
        return url

    env = {
        "host": os.getenv("PGHOST"),
        "port": os.getenv("PGPORT"),
        "user": os.getenv("PGUSER"),
        "password": os.getenv("PGPASSWORD"),
        "dbname": os.getenv("PGDATABASE"),
    }
    if not any(env.values()) and db.dsn:
        return db.dsn

    configured = {
        "host": db.host,
        "port": str(db.port) if db.port else None,
        "user": db.user,
        "password": db.password,
        "dbname": db.database,
    }
    parts = [f"{k}={env[k] or configured[k]}" for k in env if env[k] or configured[k]]
    if not parts:
        raise ConfigError("database connection is not configured (set DATABASE_URL or PG* variables)")
    return " ".join(parts)
