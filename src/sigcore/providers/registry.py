"""
Provider registry.

Single place where adapters are built from ``ProviderSettings`` and looked up
by provider or by channel.
"""

from __future__ import annotations

from functools import lru_cache

import httpx

from sigcore.providers.config import ChannelType, ProviderSettings, ProviderType, get_provider_settings
from sigcore.providers.interface import ProviderAdapter
from sigcore.providers.mock import MockProviderAdapter
from sigcore.providers.openphone import OpenPhoneAdapter
from sigcore.providers.twilio import TwilioAdapter
from sigcore.providers.whatsapp import WhatsAppBridgeAdapter
from sigcore.shared.exceptions import ValidationError
from sigcore.shared.logging import get_logger

logger = get_logger(__name__)


def _mask(s: str, keep: int = 6) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


class ProviderRegistry:
    """Maps provider types to adapter instances."""

    def __init__(self, adapters: dict[ProviderType, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[ProviderType, ProviderAdapter] = dict(adapters or {})

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> ProviderRegistry:
        """Build every real adapter, sharing one HTTP client when given."""
        adapters: dict[ProviderType, ProviderAdapter] = {
            ProviderType.TWILIO: TwilioAdapter(settings, http_client),
            ProviderType.OPENPHONE: OpenPhoneAdapter(settings, http_client),
            ProviderType.WHATSAPP: WhatsAppBridgeAdapter(settings, http_client),
        }
        if settings.enable_mock:
            adapters[ProviderType.MOCK] = MockProviderAdapter(settings)

        logger.info(
            "Provider registry built",
            extra={
                "providers": [p.value for p in adapters],
                "twilio_api_base_url": settings.twilio_api_base_url,
                "openphone_api_base_url": settings.openphone_api_base_url,
                "whatsapp_service_url": settings.whatsapp_service_url,
                "whatsapp_service_api_key": _mask(settings.whatsapp_service_api_key),
            },
        )
        return cls(adapters)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: ProviderType | str) -> ProviderAdapter:
        """Adapter for a provider.

        Raises:
            ValidationError: If the provider is unknown or not registered.
        """
        try:
            key = ProviderType(provider)
        except ValueError:
            raise ValidationError(message=f"Unsupported provider: {provider}") from None
        adapter = self._adapters.get(key)
        if adapter is None:
            raise ValidationError(message=f"Unsupported provider: {key.value}")
        return adapter

    def for_channel(
        self,
        channel: ChannelType,
        available: list[ProviderType] | None = None,
        preferred: ProviderType | None = None,
    ) -> ProviderAdapter:
        """Pick an adapter able to originate ``channel``.

        Args:
            channel: Channel to originate on.
            available: Providers the workspace has connected, in priority order.
            preferred: Provider to use when it supports the channel.

        Raises:
            ValidationError: If no candidate supports the channel.
        """
        candidates = available if available is not None else list(self._adapters)
        if preferred is not None and preferred in candidates:
            candidates = [preferred, *[p for p in candidates if p != preferred]]
        for provider in candidates:
            adapter = self._adapters.get(provider)
            if adapter is not None and adapter.supports_channel(channel):
                return adapter
        raise ValidationError(
            message=f"No connected provider supports channel {channel.value}",
            details={"channel": channel.value},
        )

    def providers(self) -> list[ProviderType]:
        return list(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    """Create and cache the process-wide provider registry."""
    return ProviderRegistry.from_settings(get_provider_settings())
