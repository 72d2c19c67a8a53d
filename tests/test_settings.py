"""Tests for the YAML settings loader."""
from pathlib import Path

import pytest

from config.settings import Settings, load_settings


def test_missing_file_gives_defaults(tmp_path):
    settings = load_settings(str(tmp_path / "absent.yaml"))
    assert settings.database.store_backend == "memory"
    assert settings.buffer.default_buffer_seconds == 10
    assert settings.executor.lease_seconds == 60
    assert settings.channels == {}


def test_sections_and_env_substitution(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_WA_TOKEN", "secret-token")
    config = tmp_path / "settings.yaml"
    config.write_text(
        "app_name: Shop\n"
        "buffer:\n"
        "  default_buffer_seconds: 4\n"
        "  unknown_key: ignored\n"
        "scheduler:\n"
        "  interval: 1.5\n"
        "channels:\n"
        "  whatsapp:\n"
        "    enabled: true\n"
        "    credentials:\n"
        "      access_token: ${TEST_WA_TOKEN}\n"
        "      verify_token: ${TEST_UNSET_VAR}\n"
        "tenants:\n"
        "  - tenant_id: shop-1\n"
        "    buffer_seconds: 3\n"
    )
    settings = load_settings(str(config))

    assert settings.app_name == "Shop"
    assert settings.buffer.default_buffer_seconds == 4
    assert settings.buffer.media_wait_seconds == 15
    assert settings.scheduler.interval == 1.5
    whatsapp = settings.channels["whatsapp"]
    assert whatsapp.enabled is True
    assert whatsapp.credentials["access_token"] == "secret-token"
    assert whatsapp.credentials["verify_token"] == "${TEST_UNSET_VAR}"
    assert settings.tenants == [{"tenant_id": "shop-1", "buffer_seconds": 3}]


def test_example_file_loads():
    example = Path(__file__).parent.parent / "config" / "settings.example.yaml"
    settings = load_settings(str(example))
    assert isinstance(settings, Settings)
    assert settings.database.store_backend == "sql"
    assert [f["id"] for f in settings.flows] == ["welcome", "nudge"]
    assert settings.channels["whatsapp"].credentials["tenant_id"] == "shop-1"


def test_env_fallback(tmp_path, monkeypatch):
    monkeypatch.delenv("TEST_DB_URL", raising=False)
    config = tmp_path / "settings.yaml"
    config.write_text("database:\n  url: ${TEST_DB_URL:-sqlite:///./fallback.db}\n")
    assert load_settings(str(config)).database.url == "sqlite:///./fallback.db"

    monkeypatch.setenv("TEST_DB_URL", "postgresql://db/pipeline")
    assert load_settings(str(config)).database.url == "postgresql://db/pipeline"


def test_timeouts_must_fit_their_leases(tmp_path):
    config = tmp_path / "settings.yaml"
    config.write_text("buffer:\n  lease_seconds: 30\n  responder_timeout: 30\n")
    with pytest.raises(ValueError, match="responder_timeout"):
        load_settings(str(config))

    config.write_text("executor:\n  lease_seconds: 30\n  delivery_timeout: 25\n")
    with pytest.raises(ValueError, match="delivery_timeout"):
        load_settings(str(config))
