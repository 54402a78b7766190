"""Unit tests for centralized configuration parsing and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from infra.config import Settings, ValidationError, clear_settings_cache, get_settings


def test_settings_reads_legacy_env_keys() -> None:
    """Legacy flat env keys should map to nested settings models."""
    env = {
        "DB_URL": "postgres://legacy/db",
        "DB_POOL_MAXCONN": "15",
        "DB_CONNECT_TIMEOUT": "9",
        "MIN_CITATIONS": "4",
        "FIELDS_OF_STUDY": "Computer Science,Mathematics",
        "WRITE_CHUNK_SIZE": "250",
        "INGEST_WORKERS": "6",
        "ON_SINK_FAULT": "SKIP",
        "PAPERGRAPH_LOG_LEVEL": "debug",
        "PAPERGRAPH_LOG_JSON": "1",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.db.url == "postgres://legacy/db"
    assert settings.db.pool_maxconn == 15
    assert settings.db.connect_timeout == 9
    assert settings.ingest.min_citations == 4
    assert settings.ingest.fields_of_study == ["Computer Science", "Mathematics"]
    assert settings.ingest.write_chunk_size == 250
    assert settings.ingest.workers == 6
    assert settings.ingest.on_sink_fault == "skip"
    assert settings.logging.level == "DEBUG"
    assert settings.logging.json_logs is True


def test_settings_reads_nested_env_keys() -> None:
    """Nested env keys should be supported with `__` delimiter."""
    env = {
        "DB__URL": "postgres://nested/db",
        "DB__POOL_MAXCONN": "11",
        "INGEST__FIELDS_OF_STUDY": "Medicine,Medicine,Biology",
        "INGEST__MIN_CITATIONS": "0",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.db.url == "postgres://nested/db"
    assert settings.db.pool_maxconn == 11
    assert settings.ingest.fields_of_study == ["Medicine", "Biology"]
    assert settings.ingest.min_citations == 0


def test_settings_defaults() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")

    assert settings.db.url is None
    assert settings.ingest.min_citations == 1
    assert settings.ingest.fields_of_study == ["Computer Science"]
    assert settings.ingest.on_sink_fault == "abort"
    assert settings.ingest.workers == 1
    assert settings.logging.level == "INFO"


def test_settings_database_url_fallback() -> None:
    settings = Settings.from_env(env={"DATABASE_URL": "postgres://fallback/db"}, env_file=".missing.env")
    assert settings.db.url == "postgres://fallback/db"


@pytest.mark.parametrize(
    "env",
    [
        {"DB_POOL_MAXCONN": "0"},
        {"MIN_CITATIONS": "-1"},
        {"WRITE_CHUNK_SIZE": "0"},
        {"INGEST_WORKERS": "65"},
        {"ON_SINK_FAULT": "retry"},
        {"FIELDS_OF_STUDY": " , "},
    ],
)
def test_settings_invalid_values_raise_validation_error(env: dict[str, str]) -> None:
    """Invalid constrained values should fail schema validation."""
    with pytest.raises(ValidationError):
        Settings.from_env(env=env, env_file=".missing.env")


def test_settings_invalid_log_level_falls_back_to_info() -> None:
    settings = Settings.from_env(env={"PAPERGRAPH_LOG_LEVEL": "chatty"}, env_file=".missing.env")
    assert settings.logging.level == "INFO"


def test_settings_reads_dotenv_and_env_overrides_it(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text('# local\nDB_URL="postgres://dotenv/db"\nMIN_CITATIONS=7\n', encoding="utf-8")

    settings = Settings.from_env(env={"MIN_CITATIONS": "2"}, env_file=str(env_file))

    assert settings.db.url == "postgres://dotenv/db"
    assert settings.ingest.min_citations == 2


def test_get_settings_reload_rebuilds_cache(monkeypatch: Any) -> None:
    """Reload should rebuild cached settings from current process env."""
    clear_settings_cache()
    monkeypatch.setenv("DB_URL", "postgres://first/db")
    first = get_settings(reload=True)

    monkeypatch.setenv("DB_URL", "postgres://second/db")
    cached = get_settings()
    second = get_settings(reload=True)

    assert first.db.url == "postgres://first/db"
    assert cached is first
    assert second.db.url == "postgres://second/db"
