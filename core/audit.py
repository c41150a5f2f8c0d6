"""
AuditTrail — Append-only log of every dispatch decision.

Writes never fail the caller: a store error is logged as
``audit_write_failed`` and ``record`` returns None.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from database.store_base import BaseMessageStore
from models.schemas import DispatchAttemptEvent, DispatchEventType

logger = structlog.get_logger()


class AuditTrail:

    def __init__(self, store: BaseMessageStore):
        self.store = store

    async def record(
        self,
        message_id: Optional[str],
        event_type: DispatchEventType,
        payload: dict[str, Any] = None,
    ) -> Optional[DispatchAttemptEvent]:
        try:
            event = await self.store.append_dispatch_event(message_id, event_type, payload or {})
        except Exception as e:
            logger.error("audit_write_failed",
                         message_id=message_id,
                         event_type=event_type.value,
                         error=str(e))
            return None
        logger.debug("audit_event_recorded",
                     message_id=message_id,
                     event_type=event_type.value)
        return event

    async def events_for(self, message_id: str) -> list[DispatchAttemptEvent]:
        return await self.store.list_dispatch_events(message_id)
