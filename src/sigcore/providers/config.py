"""
Provider configuration and shared provider enums.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderType(str, Enum):
    """Supported communication providers."""

    TWILIO = "twilio"
    OPENPHONE = "openphone"
    WHATSAPP = "whatsapp"
    MOCK = "mock"


class ChannelType(str, Enum):
    """Channels a provider can originate."""

    SMS = "sms"
    VOICE = "voice"
    WHATSAPP = "whatsapp"


class ProviderSettings(BaseSettings):
    """Provider endpoints and transport settings from environment."""

    model_config = SettingsConfigDict(
        env_prefix="PROVIDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    twilio_api_base_url: str = Field(default="https://api.twilio.com")
    openphone_api_base_url: str = Field(default="https://api.openphone.com/v1")

    # WhatsApp bridge (external whatsapp-web service)
    whatsapp_service_url: str = Field(default="http://localhost:3001")
    whatsapp_service_api_key: str = Field(default="")

    http_timeout_seconds: float = Field(default=30.0, gt=0, le=120)

    # Development only: register the in-memory mock adapter
    enable_mock: bool = Field(default=False)


@lru_cache
def get_provider_settings() -> ProviderSettings:
    """Get cached provider settings."""
    return ProviderSettings()
