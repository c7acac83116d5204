"""Tests for environment-driven configuration."""
import logging
from datetime import timedelta

from commitboard.config import MEGABYTE, PipelineConfig
from commitboard.domain.models import JobOptions
from commitboard.domain.rate_limit import credential_key


def test_defaults():
    """Test defaults when nothing is set."""
    config = PipelineConfig()

    assert config.max_repo_size_bytes == 250 * MEGABYTE
    assert config.max_commit_count == 100_000
    assert config.identity_batch_size == 50
    assert config.identity_freshness_window == timedelta(hours=24)
    assert config.github_token is None


def test_from_env_overrides(monkeypatch):
    """Test environment variables override the defaults."""
    monkeypatch.setenv("MAX_REPO_SIZE_BYTES", "1024")
    monkeypatch.setenv("IDENTITY_BATCH_SIZE", "10")
    monkeypatch.setenv("IDENTITY_FRESHNESS_HOURS", "1.5")
    monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_token")
    monkeypatch.setenv("POSTGRES_DB", "leaderboards")

    config = PipelineConfig.from_env()

    assert config.max_repo_size_bytes == 1024
    assert config.identity_batch_size == 10
    assert config.identity_freshness_window == timedelta(minutes=90)
    assert config.job_timeout_seconds == 30.0
    assert config.github_token == "ghp_token"
    assert "dbname=leaderboards" in config.connection_string


def test_empty_token_means_no_credential(monkeypatch):
    """Test an empty GITHUB_TOKEN is treated as unset."""
    monkeypatch.setenv("GITHUB_TOKEN", "")

    assert PipelineConfig.from_env().github_token is None


def test_job_options_follow_retry_settings():
    """Test queue options are derived from the retry settings."""
    config = PipelineConfig(job_max_attempts=5, job_backoff_base_ms=1000)

    assert config.job_options == JobOptions(max_attempts=5, backoff_base_ms=1000)
    assert config.job_options.delay_for_attempt(3) == timedelta(seconds=4)


def test_token_for_configured_credential():
    """Test a job's credential reference resolves to the configured token."""
    config = PipelineConfig(github_token="ghp_token")

    assert config.token_for(credential_key("ghp_token")) == "ghp_token"
    assert config.token_for(None) == "ghp_token"


def test_token_for_unknown_credential_falls_back(caplog):
    """Test a reference to a token this worker does not hold falls back with a warning."""
    config = PipelineConfig(github_token="ghp_token")

    with caplog.at_level(logging.WARNING, logger="commitboard.config"):
        assert config.token_for(credential_key("ghp_other")) == "ghp_token"
    assert "not configured here" in caplog.text
    assert PipelineConfig().token_for(credential_key("ghp_other")) is None
