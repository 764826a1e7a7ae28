"""Tests for environment-driven settings."""

from datetime import timezone

import pytest

from forkauth.config import Environment, Settings, get_settings, reset_settings_cache


class TestJwtSecret:
    def test_required_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False, jwt_secret=None)

    def test_short_secret_rejected_outside_test_mode(self):
        with pytest.raises(ValueError):
            Settings(test_mode=False, jwt_secret="too-short")

    def test_ephemeral_secret_in_test_mode(self):
        settings = Settings(test_mode=True, jwt_secret=None)
        assert settings.jwt_secret
        assert len(settings.jwt_secret) >= 32


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "Production")
        monkeypatch.setenv("JWT_SECRET", "x" * 40)
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        monkeypatch.setenv("REDIS_URL", "")

        settings = Settings.from_env()

        assert settings.environment is Environment.PRODUCTION
        assert settings.is_production
        assert settings.access_token_ttl_minutes == 15
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.redis_url is None

    def test_legacy_deadline_is_timezone_aware(self, monkeypatch):
        monkeypatch.setenv("LEGACY_PASSWORD_MIGRATION_DEADLINE", "2030-01-01T00:00:00")
        settings = Settings.from_env()
        assert settings.legacy_password_migration_deadline.tzinfo == timezone.utc

    def test_blank_legacy_deadline(self, monkeypatch):
        monkeypatch.setenv("LEGACY_PASSWORD_MIGRATION_DEADLINE", "")
        assert Settings.from_env().legacy_password_migration_deadline is None

    def test_non_positive_ttl_rejected(self, monkeypatch):
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "0")
        with pytest.raises(ValueError):
            Settings.from_env()

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first
