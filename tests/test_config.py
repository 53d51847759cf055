"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from backoffice.config import Settings, get_settings, reset_settings_cache


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    # no stray .env file from the working tree
    monkeypatch.chdir(tmp_path)
    for name in ("JWT_SECRET", "ACCESS_TOKEN_TTL_MINUTES", "CORS_ALLOW_ORIGINS"):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    reset_settings_cache()


class TestSettings:
    def test_missing_secret_is_fatal(self, clean_env):
        with pytest.raises(ValidationError) as exc:
            Settings.from_env()
        assert "JWT_SECRET must be configured" in str(exc.value)

    def test_blank_secret_is_fatal(self, clean_env):
        clean_env.setenv("JWT_SECRET", "   ")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_defaults(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s" * 40)
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 30
        assert settings.refresh_token_ttl_days == 7
        assert settings.min_password_length == 6
        assert settings.jwt_issuer == "backoffice"

    def test_env_overrides(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s" * 40)
        clean_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        clean_env.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_dotenv_file_is_read(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("JWT_SECRET=from-dotenv-file-0123456789abcdef\n")
        assert Settings.from_env().jwt_secret == "from-dotenv-file-0123456789abcdef"

    def test_non_positive_ttl_rejected(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s" * 40)
        clean_env.setenv("ACCESS_TOKEN_TTL_MINUTES", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_settings_cache(self, clean_env):
        clean_env.setenv("JWT_SECRET", "s" * 40)
        reset_settings_cache()
        assert get_settings() is get_settings()
