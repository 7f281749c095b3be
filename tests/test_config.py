import pytest
from pydantic import ValidationError

from arbrebio.config import Settings


class TestSecretKey:
    def test_production_refuses_missing_secret_key(self):
        with pytest.raises(ValidationError, match="SECRET_KEY must be set in production"):
            Settings(_env_file=None, app_env="production", secret_key="")

    def test_production_keeps_configured_secret_key(self):
        settings = Settings(_env_file=None, app_env="production", secret_key="stable-signing-key")
        assert settings.secret_key == "stable-signing-key"

    def test_development_generates_a_random_key(self):
        first = Settings(_env_file=None, app_env="development", secret_key="")
        second = Settings(_env_file=None, app_env="development", secret_key="")
        assert len(first.secret_key) >= 32
        assert first.secret_key != second.secret_key
