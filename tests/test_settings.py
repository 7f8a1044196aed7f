"""Tests for configuration loading and environment overrides."""

import pytest

from solana_indexer.config.settings import Settings


def test_defaults_without_config_file(tmp_path) -> None:
    settings = Settings(config_path=str(tmp_path / "missing.yaml"))
    assert settings.target_pool.idle_lifetime_seconds == 300
    assert settings.helius.base_url == "https://api.helius.xyz/v0"
    assert settings.query.max_rows == 1000


def test_yaml_file_loaded(tmp_path) -> None:
    path = tmp_path / "indexer.yaml"
    path.write_text("query:\n  max_rows: 25\nhelius:\n  webhook_type: raw\n")
    settings = Settings(config_path=str(path))
    assert settings.query.max_rows == 25
    assert settings.helius.webhook_type == "raw"


def test_environment_overrides_file(monkeypatch) -> None:
    monkeypatch.setenv("QUERY_MAX_ROWS", "7")
    monkeypatch.setenv("DATABASE_ECHO", "true")
    settings = Settings(config_data={"query": {"max_rows": 25}})
    assert settings.query.max_rows == 7
    assert settings.database.echo is True


def test_probe_timeout_capped_at_five_seconds() -> None:
    settings = Settings(config_data={"target_pool": {"probe_timeout_seconds": 30}})
    assert settings.target_pool.probe_timeout_seconds == 5


def test_callback_url(monkeypatch) -> None:
    monkeypatch.setenv("WEBHOOK_BASE_URL", "https://hooks.example.com/")
    assert Settings(config_data={}).callback_url(42) == "https://hooks.example.com/api/webhook/42"


def test_database_url_from_postgres_variables(monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("POSTGRES_PORT", raising=False)
    monkeypatch.setenv("POSTGRES_USER", "app")
    monkeypatch.setenv("POSTGRES_PASSWORD", "pw")
    monkeypatch.setenv("POSTGRES_HOST", "store")
    monkeypatch.setenv("POSTGRES_DB", "indexer")
    assert Settings(config_data={}).get_database_url() == "postgresql+psycopg2://app:pw@store:5432/indexer"


def test_helius_api_key_required(monkeypatch) -> None:
    monkeypatch.delenv("HELIUS_API_KEY", raising=False)
    with pytest.raises(ValueError):
        Settings(config_data={}).get_helius_api_key()
