"""Tests for settings loading."""

import pytest
import structlog
from pydantic import ValidationError

from ticketpilot.config import Settings, WarningThresholds
from ticketpilot.logging import configure_logging


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.max_retry_attempts == 3
    assert settings.retry_delay_seconds == 300
    assert settings.default_hours == 10.0
    assert settings.warning_thresholds.first == 75.0
    assert settings.warning_thresholds.second == 90.0
    assert settings.max_processing_hours == 1.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("TICKETPILOT_MAX_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("TICKETPILOT_WARNING_THRESHOLDS__FIRST", "60")
    monkeypatch.setenv("TICKETPILOT_ALLOWED_COMMANDS", '["pytest", "ruff"]')
    monkeypatch.setenv("TICKETPILOT_ENVIRONMENT", "production")

    settings = Settings(_env_file=None)

    assert settings.max_retry_attempts == 5
    assert settings.warning_thresholds.first == 60.0
    assert settings.warning_thresholds.second == 90.0
    assert settings.allowed_commands == ["pytest", "ruff"]
    assert settings.is_production


def test_thresholds_must_increase():
    with pytest.raises(ValidationError):
        WarningThresholds(first=90, second=80)


def test_retry_attempts_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_retry_attempts=0)


def test_configure_logging():
    try:
        configure_logging(Settings(_env_file=None, log_level="debug", log_json=True))

        assert structlog.is_configured()
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
    finally:
        structlog.reset_defaults()
