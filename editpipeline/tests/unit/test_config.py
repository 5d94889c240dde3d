"""Unit tests for application configuration settings."""

import pytest
from pydantic import ValidationError

from editpipeline.core.config import DEFAULT_MAX_PAYLOAD_BYTES, Settings, get_settings


@pytest.fixture
def clean_env(monkeypatch):
    """Clean environment variables and settings cache before each test."""
    env_vars = [
        "MAX_REQUESTS_PER_MINUTE",
        "RATE_WINDOW_SECONDS",
        "MAX_CONCURRENT",
        "BREAKER_THRESHOLD",
        "BREAKER_MIN_SAMPLES",
        "BREAKER_WINDOW_SIZE",
        "BREAKER_OPEN_DURATION",
        "RETRY_MAX_ATTEMPTS",
        "RETRY_BASE_BACKOFF",
        "RETRY_MAX_BACKOFF",
        "ANALYZE_TIMEOUT",
        "GENERATE_TIMEOUT",
        "PIPELINE_TIMEOUT",
        "MAX_PAYLOAD_BYTES",
        "AI_BASE_URL",
        "AI_API_KEY",
        "AI_CONNECT_TIMEOUT",
        "LOG_LEVEL",
        "LOG_FORMAT",
        "LOG_FILE_PATH",
    ]

    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    get_settings.cache_clear()

    yield monkeypatch


class TestSettingsDefaults:
    """Test that Settings class has correct default values."""

    def test_default_rate_limits(self, clean_env):
        """Test default sliding window and concurrency limits."""
        settings = Settings(_env_file=None)
        assert settings.max_requests_per_minute == 60
        assert settings.rate_window_seconds == 60.0
        assert settings.max_concurrent == 3

    def test_default_breaker_settings(self, clean_env):
        """Test default circuit breaker threshold, sample counts and open duration."""
        settings = Settings(_env_file=None)
        assert settings.breaker_threshold == 0.5
        assert settings.breaker_min_samples == 5
        assert settings.breaker_window_size == 5
        assert settings.breaker_open_duration == 15.0

    def test_default_retry_settings(self, clean_env):
        """Test default retry attempts and backoff bounds."""
        settings = Settings(_env_file=None)
        assert settings.retry_max_attempts == 3
        assert settings.retry_base_backoff == 0.5
        assert settings.retry_max_backoff == 8.0

    def test_default_timeouts_and_payload(self, clean_env):
        """Test default stage timeouts, overall deadline and payload limit."""
        settings = Settings(_env_file=None)
        assert settings.analyze_timeout == 30.0
        assert settings.generate_timeout == 60.0
        assert settings.pipeline_timeout == 180.0
        assert settings.max_payload_bytes == DEFAULT_MAX_PAYLOAD_BYTES == 20 * 1024 * 1024

    def test_default_remote_service(self, clean_env):
        """Test default AI service URL with no credential configured."""
        settings = Settings(_env_file=None)
        assert settings.ai_base_url == "http://localhost:8095"
        assert settings.ai_api_key is None
        assert settings.ai_connect_timeout == 10.0

    def test_default_logging(self, clean_env):
        """Test default logging configuration."""
        settings = Settings(_env_file=None)
        assert settings.log_level == "INFO"
        assert settings.log_format == "text"
        assert settings.log_file_path == "data/logs/editpipeline.log"
        assert settings.log_file_max_bytes == 10485760
        assert settings.log_file_backup_count == 5

    def test_no_unused_application_fields(self, clean_env):
        """Test settings only declare fields the pipeline reads."""
        for name in ("app_name", "app_version", "debug"):
            assert name not in Settings.model_fields


class TestSettingsEnvironmentOverrides:
    """Test that environment variables override defaults."""

    def test_rate_limit_override(self, clean_env):
        """Test MAX_REQUESTS_PER_MINUTE and MAX_CONCURRENT overrides."""
        clean_env.setenv("MAX_REQUESTS_PER_MINUTE", "10")
        clean_env.setenv("MAX_CONCURRENT", "1")
        settings = Settings(_env_file=None)
        assert settings.max_requests_per_minute == 10
        assert settings.max_concurrent == 1

    def test_breaker_override(self, clean_env):
        """Test breaker settings are read from the environment."""
        clean_env.setenv("BREAKER_THRESHOLD", "0.75")
        clean_env.setenv("BREAKER_WINDOW_SIZE", "10")
        clean_env.setenv("BREAKER_MIN_SAMPLES", "8")
        settings = Settings(_env_file=None)
        assert settings.breaker_threshold == 0.75
        assert settings.breaker_window_size == 10
        assert settings.breaker_min_samples == 8

    def test_api_key_is_secret(self, clean_env):
        """Test the AI_API_KEY value never appears in the settings repr."""
        clean_env.setenv("AI_API_KEY", "super-secret-value")
        settings = Settings(_env_file=None)
        assert settings.ai_api_key is not None
        assert settings.ai_api_key.get_secret_value() == "super-secret-value"
        assert "super-secret-value" not in repr(settings)

    def test_base_url_trailing_slash_stripped(self, clean_env):
        """Test trailing slashes are removed from AI_BASE_URL."""
        clean_env.setenv("AI_BASE_URL", "https://ai.example.com/")
        settings = Settings(_env_file=None)
        assert settings.ai_base_url == "https://ai.example.com"

    def test_log_level_normalized(self, clean_env):
        """Test log level is upper-cased."""
        clean_env.setenv("LOG_LEVEL", "debug")
        settings = Settings(_env_file=None)
        assert settings.log_level == "DEBUG"

    def test_case_insensitive_env(self, clean_env):
        """Test environment variable names are case-insensitive."""
        clean_env.setenv("pipeline_timeout", "42")
        settings = Settings(_env_file=None)
        assert settings.pipeline_timeout == 42.0


class TestSettingsValidation:
    """Test Settings validation rules."""

    def test_invalid_url_rejected(self, clean_env):
        """Test a non-HTTP base URL is rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, ai_base_url="ftp://ai.example.com")

    def test_non_positive_limits_rejected(self, clean_env):
        """Test zero rate and concurrency limits are rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_requests_per_minute=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, max_concurrent=0)

    def test_threshold_bounds(self, clean_env):
        """Test breaker threshold must be within (0, 1]."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, breaker_threshold=0.0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, breaker_threshold=1.5)

    def test_min_samples_cannot_exceed_window(self, clean_env):
        """Test breaker_min_samples must fit in the outcome log."""
        with pytest.raises(ValidationError, match="breaker_min_samples"):
            Settings(_env_file=None, breaker_min_samples=6, breaker_window_size=5)

    def test_base_backoff_cannot_exceed_max(self, clean_env):
        """Test retry_base_backoff must not exceed retry_max_backoff."""
        with pytest.raises(ValidationError, match="retry_base_backoff"):
            Settings(_env_file=None, retry_base_backoff=10.0, retry_max_backoff=1.0)

    def test_invalid_log_format(self, clean_env):
        """Test only text and json log formats are accepted."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")


class TestGetSettings:
    """Test the cached settings accessor."""

    def test_returns_cached_instance(self, clean_env, tmp_path):
        """Test get_settings returns the same object until the cache is cleared."""
        clean_env.chdir(tmp_path)
        clean_env.setenv("EDITPIPELINE_RUNTIME_ENV_PATH", str(tmp_path / "runtime.env"))
        first = get_settings()
        assert get_settings() is first
        get_settings.cache_clear()
        assert get_settings() is not first

    def test_reads_runtime_env_file(self, clean_env, tmp_path):
        """Test values from the runtime env file are applied."""
        runtime_env = tmp_path / "runtime.env"
        runtime_env.write_text("MAX_CONCURRENT=7\n")
        clean_env.chdir(tmp_path)
        clean_env.setenv("EDITPIPELINE_RUNTIME_ENV_PATH", str(runtime_env))
        assert get_settings().max_concurrent == 7
