"""
Reconciliation — Absorbs asynchronous delivery receipts from the provider.

Only forward progress is applied:

    queued(0) < sent(1) < delivered(2) < read(3)

``failed`` is accepted only while the message is still queued or sent.
Everything else (unknown provider id, duplicate receipt, out-of-order
receipt, anything after failed) is a logged no-op. Applied updates append
a ``status_update`` event to the audit trail.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.whatsapp_adapter import parse_status_updates
from core.audit import AuditTrail
from database.store_base import BaseMessageStore
from models.schemas import DispatchEventType, Message, MessageStatus

logger = structlog.get_logger()

STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


def is_forward(current: MessageStatus, new: MessageStatus) -> bool:
    if current == MessageStatus.FAILED:
        return False
    if new == MessageStatus.FAILED:
        return current in (MessageStatus.QUEUED, MessageStatus.SENT)
    return STATUS_RANK[new] > STATUS_RANK[current]


class StatusReconciler:

    def __init__(self, store: BaseMessageStore, audit: AuditTrail):
        self.store = store
        self.audit = audit

    async def apply_provider_status(
        self,
        provider_message_id: str,
        new_status: MessageStatus,
        error_reason: Optional[str] = None,
        raw: dict[str, Any] = None,
    ) -> Optional[Message]:
        """Returns the updated Message, or None when nothing was applied."""
        msg = await self.store.find_message_by_provider_id(provider_message_id)
        if msg is None:
            logger.info("status_update_unknown_message",
                        provider_message_id=provider_message_id,
                        status=new_status.value)
            return None

        if not is_forward(msg.status, new_status):
            logger.info("status_update_ignored",
                        message_id=msg.id,
                        current=msg.status.value,
                        requested=new_status.value)
            return None

        reason = error_reason if new_status == MessageStatus.FAILED else msg.error_reason
        updated = await self.store.update_message_status(
            msg.id, new_status,
            error_reason=reason,
            expected_status=msg.status,
        )
        if updated is None or updated.status != new_status:
            logger.info("status_update_lost_race",
                        message_id=msg.id,
                        requested=new_status.value)
            return None

        await self.audit.record(msg.id, DispatchEventType.STATUS_UPDATE, {
            "from": msg.status.value,
            "to": new_status.value,
            "provider_message_id": provider_message_id,
            "error_reason": error_reason,
            "raw": raw or {},
        })
        logger.info("status_update_applied",
                    message_id=msg.id,
                    from_status=msg.status.value,
                    to_status=new_status.value)
        return updated

    async def apply_status_payload(self, payload: dict[str, Any]) -> list[Message]:
        """Apply every receipt in a WhatsApp status webhook body."""
        applied: list[Message] = []
        for update in parse_status_updates(payload):
            msg = await self.apply_provider_status(
                update.provider_message_id, update.status,
                error_reason=update.error_reason, raw=update.raw,
            )
            if msg is not None:
                applied.append(msg)
        return applied
