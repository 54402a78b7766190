"""Settings for the ingest CLI, validated with pydantic.

Values come from a local ``.env`` file overlaid by the process environment.
Every setting has a nested name (``SECTION__FIELD``, e.g. ``INGEST__WORKERS``)
and usually a short flat alias (``INGEST_WORKERS``); the nested name wins when
both are set. CLI flags override whatever is resolved here.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_DEFAULT_FIELDS_OF_STUDY = ["Computer Science"]
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _as_bool(value: object, default: bool) -> bool:
    text = "" if value is None else str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    return default


class DatabaseConfig(BaseModel):
    """Postgres sink connection and pool sizing."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="libpq connection string or URL")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level", mode="before")
    @classmethod
    def _known_level(cls, value: object) -> str:
        level = str(value or "").strip().upper()
        return level if level in _LOG_LEVELS else "INFO"

    @field_validator("json_logs", "override_root_handlers", mode="before")
    @classmethod
    def _flag(cls, value: object) -> bool:
        return _as_bool(value, False)


class DbMetricsConfig(BaseModel):
    """Slow-query logging and histogram emission for sink statements."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _enabled(cls, value: object) -> bool:
        return _as_bool(value, True)

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _threshold(cls, value: object) -> float:
        # Unparseable thresholds fall back to the default instead of failing startup.
        try:
            return max(0.0, float(str(value).strip()))
        except (TypeError, ValueError):
            return 1000.0


class IngestConfig(BaseModel):
    """Record ingestion defaults (CLI flags override these)."""

    model_config = ConfigDict(frozen=True)

    min_citations: int = Field(default=1, ge=0)
    fields_of_study: list[str] = Field(default_factory=lambda: list(_DEFAULT_FIELDS_OF_STUDY))
    write_chunk_size: int = Field(default=1000, ge=1, le=10_000)
    workers: int = Field(default=1, ge=1, le=64)
    on_sink_fault: Literal["abort", "skip"] = Field(default="abort")
    progress_every: int = Field(default=10_000, ge=0)

    @field_validator("fields_of_study", mode="before")
    @classmethod
    def _split_fields(cls, value: object) -> list[str]:
        """Accept a list or a comma-separated string; drop blanks and repeats, keep order."""
        if value is None:
            return list(_DEFAULT_FIELDS_OF_STUDY)
        if isinstance(value, str):
            raw = value.split(",")
        elif isinstance(value, (list, tuple, set, frozenset)):
            raw = list(value)
        else:
            raise ValueError("ingest.fields_of_study must be a list[str] or comma-separated string")

        fields = list(dict.fromkeys(str(part).strip() for part in raw if str(part).strip()))
        if not fields:
            raise ValueError("ingest.fields_of_study must contain at least one field")
        return fields

    @field_validator("on_sink_fault", mode="before")
    @classmethod
    def _lower_policy(cls, value: object) -> str:
        return str(value or "abort").strip().lower()


# section -> field -> flat aliases (the nested SECTION__FIELD name is always accepted first)
_ENV_ALIASES: dict[str, dict[str, tuple[str, ...]]] = {
    "db": {
        "url": ("DB_URL", "DATABASE_URL"),
        "pool_maxconn": ("DB_POOL_MAXCONN",),
        "connect_timeout": ("DB_CONNECT_TIMEOUT",),
    },
    "logging": {
        "level": ("PAPERGRAPH_LOG_LEVEL",),
        "json_logs": ("PAPERGRAPH_LOG_JSON",),
        "override_root_handlers": ("PAPERGRAPH_LOG_OVERRIDE",),
    },
    "db_metrics": {
        "metrics_enabled": ("DB_QUERY_METRICS_ENABLED",),
        "slow_query_threshold_ms": ("DB_SLOW_QUERY_THRESHOLD_MS",),
    },
    "ingest": {
        "min_citations": ("MIN_CITATIONS",),
        "fields_of_study": ("FIELDS_OF_STUDY",),
        "write_chunk_size": ("WRITE_CHUNK_SIZE",),
        "workers": ("INGEST_WORKERS",),
        "on_sink_fault": ("ON_SINK_FAULT",),
        "progress_every": ("PROGRESS_EVERY",),
    },
}


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)
    ingest: IngestConfig = Field(default_factory=IngestConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Resolve settings from ``env_file`` overlaid by ``env`` (process env by default)."""
        merged = read_dotenv(Path(env_file))
        merged.update((str(k), str(v)) for k, v in (os.environ if env is None else env).items())
        return cls.model_validate(_sections_from_env(merged))


def read_dotenv(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` lines; comments and blank lines are skipped, one level of quotes stripped."""
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.strip().partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        value = value.strip()
        if value[:1] in {"'", '"'} and value[-1:] == value[:1] and len(value) > 1:
            value = value[1:-1]
        values[key] = value
    return values


def _lookup(env: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = env.get(name, "").strip()
        if value:
            return value
    return None


def _sections_from_env(env: Mapping[str, str]) -> dict[str, dict[str, str]]:
    payload: dict[str, dict[str, str]] = {}
    for section, fields in _ENV_ALIASES.items():
        values: dict[str, str] = {}
        for field, aliases in fields.items():
            value = _lookup(env, (f"{section.upper()}__{field.upper()}", *aliases))
            if value is not None:
                values[field] = value
        payload[section] = values
    return payload


_lock = Lock()
_cached: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return the process-wide settings, building them on first use or when ``reload`` is set."""
    global _cached
    with _lock:
        if reload or _cached is None:
            _cached = Settings.from_env()
        return _cached


def clear_settings_cache() -> None:
    global _cached
    with _lock:
        _cached = None


__all__ = [
    "DatabaseConfig",
    "DbMetricsConfig",
    "IngestConfig",
    "LoggingSettings",
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "read_dotenv",
    "ValidationError",
]
