"""
Tests for application and provider configuration.
"""

import pytest

from sigcore.config import Settings, get_settings
from sigcore.providers.config import ProviderSettings


class TestSettings:
    def test_declared_defaults(self) -> None:
        # Environment variables may override runtime values; check the declared defaults.
        fields = Settings.model_fields
        assert fields["outbound_failure_threshold"].default == 10
        assert fields["webhook_rate_limit_requests"].default == 100
        assert fields["webhook_rate_limit_window_seconds"].default == 60
        assert fields["idempotency_retention_days"].default == 7
        assert fields["outbound_header_prefix"].default == "Sigcore"

    def test_cors_origins_list(self) -> None:
        settings = Settings(cors_origins="http://a.test, http://b.test,,")
        assert settings.cors_origins_list == ["http://a.test", "http://b.test"]

    def test_public_base_url_trailing_slash_stripped(self) -> None:
        settings = Settings(public_base_url="https://api.example.com/")
        assert settings.public_base_url == "https://api.example.com"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OUTBOUND_FAILURE_THRESHOLD", "3")
        monkeypatch.setenv("OUTBOUND_HEADER_PREFIX", "Acme")

        settings = get_settings()

        assert settings.outbound_failure_threshold == 3
        assert settings.outbound_header_prefix == "Acme"

    def test_invalid_threshold_rejected(self) -> None:
        with pytest.raises(ValueError):
            Settings(outbound_failure_threshold=0)


class TestProviderSettings:
    def test_env_prefix(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PROVIDER_WHATSAPP_SERVICE_URL", "http://bridge:3001")
        monkeypatch.setenv("PROVIDER_ENABLE_MOCK", "true")

        settings = ProviderSettings()

        assert settings.whatsapp_service_url == "http://bridge:3001"
        assert settings.enable_mock is True
