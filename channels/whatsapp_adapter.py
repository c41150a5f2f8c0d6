"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Phone number normalization (digits only)
- Outbound free-form text via POST {base_url}/{api_version}/{phone_number_id}/messages
- Transport-error retry (tenacity); HTTP errors are not retried
- Status webhook parsing (sent, delivered, read, failed) for reconciliation
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ProviderResponse, ProviderSendAdapter
from core.errors import ProviderSendFailed
from models.schemas import Destination, MessageStatus, ProviderStatusUpdate

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://graph.facebook.com"
DEFAULT_API_VERSION = "v21.0"

_STATUS_MAP = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


# ══════════════════════════════════════════════════════════════
#  STATUS WEBHOOK PARSING
# ══════════════════════════════════════════════════════════════

def parse_status_updates(payload: dict[str, Any]) -> list[ProviderStatusUpdate]:
    """
    Extract delivery receipts from a Cloud API webhook body:
    entry[].changes[].value.statuses[]. Unknown status strings and
    entries without an id are skipped.
    """
    updates: list[ProviderStatusUpdate] = []
    for entry in payload.get("entry", []) or []:
        for change in entry.get("changes", []) or []:
            value = change.get("value", {}) or {}
            for st in value.get("statuses", []) or []:
                if not isinstance(st, dict):
                    continue
                pid = st.get("id")
                status = _STATUS_MAP.get(str(st.get("status", "")).lower())
                if not pid or status is None:
                    logger.debug("whatsapp_status_skipped",
                                 provider_message_id=pid,
                                 status=st.get("status"))
                    continue

                error_reason = None
                if status == MessageStatus.FAILED:
                    errors = st.get("errors")
                    first = errors[0] if isinstance(errors, list) and errors else {}
                    if not isinstance(first, dict):
                        first = {}
                    error_reason = first.get("title") or first.get("message") or "failed"

                updates.append(ProviderStatusUpdate(
                    provider_message_id=pid,
                    status=status,
                    error_reason=error_reason,
                    raw=st,
                ))
    return updates


# ══════════════════════════════════════════════════════════════
#  WHATSAPP CLOUD ADAPTER
# ══════════════════════════════════════════════════════════════

class WhatsAppCloudAdapter(ProviderSendAdapter):
    """
    WhatsApp Business Cloud API adapter.

    Config keys: phone_number_id, access_token, api_version, base_url, timeout.
    A pre-built httpx.AsyncClient may be passed in (tests use MockTransport).
    """

    name = "whatsapp_cloud"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        self.client = client
        self._owns_client = client is None
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._api_version: str = DEFAULT_API_VERSION
        self._base_url: str = DEFAULT_BASE_URL
        self._timeout: float = 30.0

    async def initialize(self, config: dict[str, Any]) -> None:
        await super().initialize(config)
        self._phone_number_id = str(config.get("phone_number_id", "") or "")
        self._access_token = str(config.get("access_token", "") or "")
        self._api_version = config.get("api_version") or DEFAULT_API_VERSION
        self._base_url = (config.get("base_url") or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = float(config.get("timeout", 30.0))
        if not self._phone_number_id or not self._access_token:
            logger.warning("whatsapp_credentials_missing")

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self.client

    @property
    def messages_url(self) -> str:
        return f"{self._base_url}/{self._api_version}/{self._phone_number_id}/messages"

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, destination: Destination, body: str) -> ProviderResponse:
        phone = normalize_phone(destination.address)
        if not phone:
            raise ProviderSendFailed("invalid_destination_address")

        payload = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "text",
            "text": {"body": body},
        }

        try:
            response = await self._post(payload)
        except httpx.TransportError as e:
            raise ProviderSendFailed(str(e) or type(e).__name__, retryable=True, cause=e) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"body": data}

        if response.is_error:
            reason = (data.get("error") or {}).get("message") or f"send_failed_{response.status_code}"
            logger.warning("whatsapp_send_rejected",
                           status_code=response.status_code,
                           reason=reason)
            raise ProviderSendFailed(reason, retryable=response.status_code >= 500)

        messages = data.get("messages") or []
        msg_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not msg_id:
            raise ProviderSendFailed("provider_response_missing_id")

        logger.info("whatsapp_text_sent", to=phone, msg_id=msg_id)
        return ProviderResponse(provider_message_id=msg_id, raw_response=data)

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            self.messages_url,
            json=payload,
            headers={"Authorization": f"Bearer {self._access_token}"},
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def shutdown(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
