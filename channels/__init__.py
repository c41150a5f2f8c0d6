"""
Provider adapters — the outbound send seam.

  from channels import create_provider_adapter
  adapter = await create_provider_adapter("whatsapp_cloud", credentials)
"""
from __future__ import annotations

from typing import Any

from channels.base import ProviderMetrics, ProviderResponse, ProviderSendAdapter
from channels.mock_adapter import MockProviderAdapter
from channels.whatsapp_adapter import WhatsAppCloudAdapter, normalize_phone, parse_status_updates


async def create_provider_adapter(provider_type: str = "mock",
                                  credentials: dict[str, Any] = None) -> ProviderSendAdapter:
    if provider_type == "whatsapp_cloud":
        adapter: ProviderSendAdapter = WhatsAppCloudAdapter()
    elif provider_type == "mock":
        adapter = MockProviderAdapter()
    else:
        raise ValueError(f"Unknown provider type: {provider_type}")
    await adapter.initialize(credentials or {})
    return adapter


__all__ = [
    "ProviderMetrics", "ProviderResponse", "ProviderSendAdapter",
    "MockProviderAdapter", "WhatsAppCloudAdapter",
    "normalize_phone", "parse_status_updates",
    "create_provider_adapter",
]
