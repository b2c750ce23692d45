import pytest

from syncjobs.config.settings import AuthMode, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "SyncJobs"
    assert settings.version == "1.0.0"
    assert settings.auth_mode == AuthMode.NONE
    assert settings.job_default_max_jobs == 25
    assert settings.job_max_jobs_limit == 100
    assert settings.job_stuck_threshold_minutes == 10
    assert settings.job_max_retries == 3
    assert settings.job_smart_backoff_base_minutes == 5
    assert settings.job_smart_backoff_max_steps == 6


def test_production_validation_blocks_none_auth():
    """Test that production environment blocks AUTH_MODE=none."""
    with pytest.raises(ValueError, match="AUTH_MODE=none is not allowed in production"):
        Settings(environment="production", auth_mode=AuthMode.NONE)


def test_production_validation_blocks_dev_auth():
    with pytest.raises(ValueError, match="AUTH_MODE=dev is not allowed in production"):
        Settings(environment="production", auth_mode=AuthMode.DEV)


def test_production_allows_oidc_auth():
    settings = Settings(environment="production", auth_mode=AuthMode.OIDC)
    assert settings.auth_mode == AuthMode.OIDC


def test_default_max_jobs_cannot_exceed_limit():
    with pytest.raises(ValueError, match="cannot exceed JOB_MAX_JOBS_LIMIT"):
        Settings(job_default_max_jobs=200, job_max_jobs_limit=100)


def test_get_settings_returns_global_instance():
    assert get_settings() is get_settings()
