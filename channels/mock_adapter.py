"""
Mock provider — stands in for the real messaging API in local runs and tests.

Returns ``wamid.<hex>`` ids and records every call. Can be scripted to
fail (``fail_with``), hang (``delay_s``) or return a fixed id.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from typing import Any, Optional

from channels.base import ProviderResponse, ProviderSendAdapter
from core.errors import ProviderSendFailed
from models.schemas import Destination

logger = structlog.get_logger()


class MockProviderAdapter(ProviderSendAdapter):

    name = "mock"

    def __init__(
        self,
        provider_message_id: Optional[str] = None,
        fail_with: Optional[str] = None,
        delay_s: float = 0.0,
    ):
        super().__init__()
        self.provider_message_id = provider_message_id
        self.fail_with = fail_with
        self.delay_s = delay_s
        self.calls: list[dict[str, Any]] = []

    async def _do_send(self, destination: Destination, body: str) -> ProviderResponse:
        self.calls.append({"to": destination.address, "body": body})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with:
            raise ProviderSendFailed(self.fail_with)

        msg_id = self.provider_message_id or f"wamid.{uuid.uuid4().hex[:20]}"
        logger.info("mock_provider_sent", to=destination.address, msg_id=msg_id)
        return ProviderResponse(
            provider_message_id=msg_id,
            raw_response={"messages": [{"id": msg_id}]},
        )

    @property
    def call_count(self) -> int:
        return len(self.calls)
