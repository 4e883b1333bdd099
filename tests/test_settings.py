from types import SimpleNamespace

import pytest

from opsqueue.config.settings import (
    ClaimStrategy,
    Settings,
    StoreBackend,
    get_app_settings,
    get_settings,
)


def test_default_settings():
    """Test default settings values."""
    settings = Settings(_env_file=None)

    assert settings.app_name == "Ops Queue"
    assert settings.version == "1.0.0"
    assert settings.store_backend == StoreBackend.SQL
    assert settings.job_default_max_attempts == 5
    assert settings.job_retry_base_delay_s == 30
    assert settings.job_max_backoff_s == 3600
    assert settings.job_stuck_threshold_minutes == 10
    assert settings.job_claim_strategy == ClaimStrategy.AUTO
    assert settings.worker_time_budget_s < settings.trigger_timeout_s


def test_env_overrides(monkeypatch):
    """Test that environment variables are read case-insensitively."""
    monkeypatch.setenv("JOB_CLAIM_STRATEGY", "optimistic")
    monkeypatch.setenv("store_backend", "memory")

    settings = Settings(_env_file=None)

    assert settings.job_claim_strategy == ClaimStrategy.OPTIMISTIC
    assert settings.store_backend == StoreBackend.MEMORY


def test_worker_budget_must_fit_trigger_timeout():
    """The trigger must outlive the worker so it can return a summary."""
    with pytest.raises(ValueError, match="WORKER_TIME_BUDGET_S must be shorter"):
        Settings(_env_file=None, worker_time_budget_s=300, trigger_timeout_s=280)


def test_production_requires_cron_secret():
    """Test that production environment requires CRON_SECRET."""
    with pytest.raises(ValueError, match="CRON_SECRET is required in production"):
        Settings(_env_file=None, environment="production", cron_secret=None)


def test_production_with_cron_secret():
    settings = Settings(_env_file=None, environment="production", cron_secret="s3cret")
    assert settings.environment == "production"


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "Ops Queue"


def test_app_settings_prefer_the_app_instance():
    """Routes see the settings the app was created with, else the global ones."""
    custom = Settings(_env_file=None, job_stuck_threshold_minutes=42)
    with_settings = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(settings=custom)))
    without = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    assert get_app_settings(with_settings) is custom
    assert get_app_settings(without) is get_settings()
