from __future__ import annotations

import pytest

from quota_gate.config import get_settings


_ENV_NAMES = [
    "ENABLE_RATE_LIMIT",
    "RATE_LIMIT_TIERS_FILE",
    "RATE_LIMIT_CLEANUP_INTERVAL_S",
    "RATE_LIMIT_KEY_HEADER",
    "CORS_ORIGINS",
    "SERVICE_NAME",
    "HOST",
    "PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = get_settings()
    assert settings.enable_rate_limit is True
    assert settings.tiers_file is None
    assert settings.cleanup_interval_s == 60.0
    assert settings.key_header == "X-Client-Id"
    assert settings.service_name == "quota-gate"
    assert settings.http_port == 4290


def test_reads_current_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENABLE_RATE_LIMIT", "off")
    monkeypatch.setenv("RATE_LIMIT_TIERS_FILE", "/etc/quota/tiers.yaml")
    monkeypatch.setenv("RATE_LIMIT_CLEANUP_INTERVAL_S", "0.5")
    monkeypatch.setenv("RATE_LIMIT_KEY_HEADER", "X-Api-Key")
    monkeypatch.setenv("PORT", "8080")

    settings = get_settings()
    assert settings.enable_rate_limit is False
    assert settings.tiers_file == "/etc/quota/tiers.yaml"
    assert settings.cleanup_interval_s == 0.5
    assert settings.key_header == "X-Api-Key"
    assert settings.http_port == 8080

    monkeypatch.setenv("ENABLE_RATE_LIMIT", "YES")
    assert get_settings().enable_rate_limit is True


def test_bad_boolean_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENABLE_RATE_LIMIT", "sometimes")
    with pytest.raises(ValueError, match="ENABLE_RATE_LIMIT"):
        get_settings()


def test_bad_interval_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_CLEANUP_INTERVAL_S", "soon")
    with pytest.raises(ValueError, match="RATE_LIMIT_CLEANUP_INTERVAL_S"):
        get_settings()
