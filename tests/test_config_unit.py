import stat

import pytest
from pydantic import ValidationError

from tutorbridge.config import AppEnv, Settings, get_settings

ACCESS = "a" * 40
REFRESH = "r" * 40


def _settings(**overrides):
    values = {"jwt_access_secret": ACCESS, "jwt_refresh_secret": REFRESH}
    values.update(overrides)
    return Settings(**values)


class TestSettings:
    def test_environment_is_read(self):
        settings = get_settings()
        assert settings.app_env is AppEnv.TEST
        assert settings.use_memory_store is True
        assert settings.internal_service_key == "test-service-key"
        assert get_settings() is settings

    def test_env_names_are_mapped(self, monkeypatch):
        monkeypatch.setenv("ACCOUNT_LOCKOUT_MINUTES", "30")
        monkeypatch.setenv("GENERATION_TIMEOUT_SECONDS", "2.5")
        settings = Settings.from_env()
        assert settings.lockout_duration_minutes == 30
        assert settings.generation_timeout_seconds == 2.5

    def test_equal_signing_secrets_rejected(self):
        """Access and refresh tokens need different keys."""
        with pytest.raises(ValidationError):
            _settings(jwt_refresh_secret=ACCESS)

    def test_cors_origins_split_on_commas(self):
        settings = _settings(cors_allow_origins="http://a.test, http://b.test,,")
        assert settings.cors_allow_origins == ["http://a.test", "http://b.test"]

    @pytest.mark.parametrize(
        "field",
        [
            "access_token_ttl_minutes",
            "refresh_token_ttl_minutes",
            "max_login_attempts",
            "lockout_duration_minutes",
            "generation_timeout_seconds",
        ],
    )
    def test_non_positive_values_rejected(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: 0})


class TestGeneratedSecrets:
    def test_missing_secrets_are_generated_and_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.delenv("JWT_ACCESS_SECRET", raising=False)
        monkeypatch.delenv("JWT_REFRESH_SECRET", raising=False)

        first = Settings.from_env()
        second = Settings.from_env()

        secret_file = tmp_path / ".jwt_access_secret"
        assert secret_file.read_text() == first.jwt_access_secret
        assert stat.S_IMODE(secret_file.stat().st_mode) == 0o600
        assert second.jwt_access_secret == first.jwt_access_secret
        assert second.jwt_refresh_secret == first.jwt_refresh_secret
        assert first.jwt_access_secret != first.jwt_refresh_secret
