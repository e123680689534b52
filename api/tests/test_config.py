"""Tests for APISettings validation."""

from __future__ import annotations

import pytest
from pydantic import SecretStr, ValidationError

from api.config import APISettings, PlatformEnv


class TestAPISettings:
    def test_dev_defaults_are_accepted(self):
        settings = APISettings(_env_file=None)

        assert settings.platform_env == PlatformEnv.DEV
        assert settings.resume_item_timeout == 60.0

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("API_RESUME_ITEM_TIMEOUT", "12.5")

        assert APISettings(_env_file=None).resume_item_timeout == 12.5

    def test_production_requires_webhook_secret(self):
        with pytest.raises(ValidationError, match="WEBHOOK_SECRET"):
            APISettings(
                _env_file=None,
                platform_env="production",
                auth_token_secret=SecretStr("real-secret"),
            )

    def test_production_rejects_default_token_secret(self):
        with pytest.raises(ValidationError, match="AUTH_TOKEN_SECRET"):
            APISettings(
                _env_file=None,
                platform_env="production",
                stripe_webhook_secret=SecretStr("whsec_live"),
            )

    def test_production_with_secrets(self):
        settings = APISettings(
            _env_file=None,
            platform_env="staging",
            stripe_webhook_secret=SecretStr("whsec_live"),
            auth_token_secret=SecretStr("real-secret"),
        )

        assert settings.platform_env == PlatformEnv.STAGING

    def test_wildcard_cors_with_credentials_rejected(self):
        with pytest.raises(ValidationError, match="wildcard"):
            APISettings(_env_file=None, cors_origins=["*"], cors_allow_credentials=True)
