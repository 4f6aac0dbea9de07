"""Unit tests for configuration management."""

import os
from collections.abc import Generator

import pytest
from pydantic import ValidationError

from services.shared.config import Settings, get_settings


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before and after test."""
    original_env = dict(os.environ)
    env_vars = [k for k in os.environ if k.startswith("APP_")]
    for var in env_vars:
        del os.environ[var]
    yield
    os.environ.clear()
    os.environ.update(original_env)


def test_settings_defaults(clean_env: None) -> None:
    """Test that settings have correct default values."""
    settings = Settings()

    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.service_name == "invoice-reconciliation-engine"
    assert settings.service_version == "0.1.0"


def test_settings_from_env_vars(clean_env: None) -> None:
    """Test that settings can be overridden via environment variables."""
    os.environ["APP_ENVIRONMENT"] = "production"
    os.environ["APP_LOG_LEVEL"] = "ERROR"
    os.environ["APP_SERVICE_NAME"] = "test-service"

    settings = Settings()

    assert settings.environment == "production"
    assert settings.log_level == "ERROR"
    assert settings.service_name == "test-service"


def test_settings_case_insensitive(clean_env: None) -> None:
    """Test that environment variables are case insensitive."""
    os.environ["app_log_level"] = "DEBUG"

    settings = Settings()

    assert settings.log_level == "DEBUG"


def test_get_settings_factory() -> None:
    """Test that factory function returns Settings instance."""
    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service_name == "invoice-reconciliation-engine"


def test_price_thresholds_from_env(clean_env: None) -> None:
    """Deviation thresholds are configurable."""
    os.environ["APP_PRICE_MINOR_THRESHOLD"] = "0.02"
    os.environ["APP_PRICE_MAJOR_THRESHOLD"] = "0.1"

    settings = Settings()

    assert settings.price_minor_threshold == 0.02
    assert settings.price_major_threshold == 0.1


def test_minor_threshold_must_be_below_major(clean_env: None) -> None:
    """Test that inverted thresholds are rejected."""
    with pytest.raises(ValidationError, match="price_minor_threshold"):
        Settings(price_minor_threshold=0.2, price_major_threshold=0.1)


def test_confidence_threshold_bounds(clean_env: None) -> None:
    """Test that the confidence threshold must be a probability."""
    with pytest.raises(ValidationError):
        Settings(extraction_confidence_threshold=1.5)


def test_batch_retention_and_link_expiry(clean_env: None) -> None:
    os.environ["APP_BATCH_RETENTION_SECONDS"] = "120"

    settings = Settings()

    assert settings.batch_retention_seconds == 120.0
    assert settings.storage_url_expiry_seconds == 900
    with pytest.raises(ValidationError):
        Settings(storage_url_expiry_seconds=0)
