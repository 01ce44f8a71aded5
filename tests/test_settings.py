from __future__ import annotations

import pytest
from pydantic import ValidationError

from webhook_service.security.url_validator import UrlValidator
from webhook_service.settings import Settings


def test_defaults():
    settings = Settings(_env_file=None)
    assert settings.webhook_max_attempts == 5
    assert settings.webhook_signature_header == "X-Signature"
    assert ".svc.cluster.local" in settings.webhook_blocked_host_suffixes
    assert 6379 in settings.webhook_blocked_ports


def test_csv_values_from_env(monkeypatch):
    monkeypatch.setenv("WEBHOOK_BLOCKED_PORTS", "22, 8081")
    monkeypatch.setenv("WEBHOOK_BLOCKED_HOST_SUFFIXES", ".Corp,.lan")
    monkeypatch.setenv("CORS_ALLOWED_ORIGINS", "https://app.example.com")
    monkeypatch.setenv("WEBHOOK_MAX_ATTEMPTS", "8")

    settings = Settings(_env_file=None)

    assert settings.webhook_blocked_ports == [22, 8081]
    assert settings.webhook_blocked_host_suffixes == [".corp", ".lan"]
    assert settings.cors_allowed_origins == ["https://app.example.com"]
    assert settings.webhook_max_attempts == 8

    validator = UrlValidator.from_settings(settings)
    assert not validator.validate("https://example.com:8081/").ok
    assert not validator.validate("https://nas.lan/").ok
    assert validator.validate("https://printer.local/").ok


def test_lease_timeout_must_outlive_a_claimed_batch(monkeypatch):
    monkeypatch.setenv("WEBHOOK_REQUEST_TIMEOUT_SECONDS", "10")
    monkeypatch.setenv("WEBHOOK_BATCH_SIZE", "20")
    monkeypatch.setenv("WEBHOOK_DISPATCH_CONCURRENCY", "10")
    monkeypatch.setenv("WEBHOOK_LEASE_TIMEOUT_SECONDS", "20")

    with pytest.raises(ValidationError, match="webhook_lease_timeout_seconds"):
        Settings(_env_file=None)

    monkeypatch.setenv("WEBHOOK_LEASE_TIMEOUT_SECONDS", "21")
    assert Settings(_env_file=None).webhook_lease_timeout_seconds == 21
