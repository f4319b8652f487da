try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import logging

import pytest
from pydantic import ValidationError

from oauth_lifecycle.core.config import AppSettings, BrokerSettings, RefreshSettings
from oauth_lifecycle.core.logging import configure_logging, sanitize_token


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOKEN_ENCRYPTION_SECRET", "secret")
    for key in (
        "OAUTH_BROKER_URL",
        "REFRESH_MAX_ATTEMPTS",
        "REFRESH_SWEEP_INTERVAL_SECONDS",
        "CIRCUIT_FAILURE_THRESHOLD",
    ):
        monkeypatch.delenv(key, raising=False)

    settings = AppSettings()

    assert settings.refresh.max_attempts == 3
    assert settings.refresh.buffer_minutes is None
    assert settings.refresh.max_backoff_ms == 30000
    assert settings.refresh.sweep_interval_seconds == 300
    assert settings.refresh.sweep_batch_size == 10
    assert settings.circuit_breaker.failure_threshold == 5
    assert settings.circuit_breaker.reset_timeout_ms == 60000
    assert settings.broker.url is None
    assert settings.validation.cache_ttl_seconds == 300


def test_comma_separated_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TOKEN_ENCRYPTION_SECRET", "secret")
    monkeypatch.setenv("TOKEN_ENCRYPTION_PREVIOUS_SECRETS", "old-1, old-2,,")
    monkeypatch.setenv("OAUTH_BROKER_DISABLED_PROVIDERS", "Reddit,SLACK")

    settings = AppSettings()

    assert settings.security.previous_token_encryption_secrets == ("old-1", "old-2")
    assert settings.broker.disabled_providers == ("reddit", "slack")


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFRESH_MAX_BACKOFF_MS", "10")
    with pytest.raises(ValidationError):
        RefreshSettings()

    monkeypatch.setenv("REFRESH_MAX_BACKOFF_MS", "1000")
    monkeypatch.setenv("REFRESH_SWEEP_BATCH_SIZE", "0")
    with pytest.raises(ValidationError):
        RefreshSettings()

    monkeypatch.setenv("OAUTH_BROKER_URL", "not a url")
    with pytest.raises(ValidationError):
        BrokerSettings()


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        (None, "[invalid_token]"),
        ("short", "[short_token]"),
        ("abcd-secret-middle-wxyz", "abcd...wxyz"),
    ],
)
def test_sanitize_token(token, expected: str) -> None:
    assert sanitize_token(token) == expected


def test_configure_logging_quiets_httpx() -> None:
    configure_logging("debug")

    assert logging.getLogger("httpx").level == logging.WARNING
