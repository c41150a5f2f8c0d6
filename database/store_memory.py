"""
InMemoryMessageStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlMessageStore
  - Safe under asyncio (no awaits inside a mutation)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from core.errors import ContactAddressMissing, ConversationNotFound
from database.store_base import BaseMessageStore
from models.schemas import (
    Contact, Conversation, Destination, DispatchAttemptEvent,
    DispatchEventType, Message, MessageStatus, utcnow,
)

logger = structlog.get_logger()


class InMemoryMessageStore(BaseMessageStore):
    """
    Full-featured in-memory store with the same interface as SqlMessageStore.
    Hands out copies so callers never mutate stored rows.
    """

    def __init__(self):
        self._contacts: dict[str, Contact] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, Message] = {}          # insertion-ordered
        self._events: list[DispatchAttemptEvent] = []

        # Indexes
        self._provider_index: dict[str, str] = {}        # provider_message_id → message_id
        self._idempotency_index: dict[str, str] = {}     # "workspace:key" → message_id
        logger.info("inmemory_store_initialized")

    # ── Contacts / Conversations ──────────────────────────

    async def upsert_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact.model_copy()
        self._mark_dirty("contacts")
        return contact

    async def create_conversation(self, workspace_id: str, contact_id: str,
                                  conversation_id: str = "") -> Conversation:
        conv = Conversation(workspace_id=workspace_id, contact_id=contact_id)
        if conversation_id:
            conv.id = conversation_id
        self._conversations[conv.id] = conv
        self._mark_dirty("conversations")
        return conv.model_copy()

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        return conv.model_copy() if conv else None

    async def touch_conversation_last_message_at(self, conversation_id: str, timestamp: datetime) -> None:
        conv = self._conversations.get(conversation_id)
        if conv:
            conv.last_message_at = timestamp
            self._mark_dirty("conversations")

    async def resolve_conversation_destination(self, conversation_id: str) -> Destination:
        conv = self._conversations.get(conversation_id)
        if not conv:
            raise ConversationNotFound(conversation_id)
        contact = self._contacts.get(conv.contact_id)
        if not contact or not contact.phone:
            raise ContactAddressMissing(conversation_id)
        return Destination(
            conversation_id=conversation_id,
            contact_id=contact.id,
            address=contact.phone,
            comms_status=contact.comms_status,
        )

    # ── Messages ──────────────────────────────────────────

    async def find_recent_outbound_message(
        self, workspace_id: str, conversation_id: str, body_text: str, since: datetime,
    ) -> Optional[Message]:
        candidates = [
            m for m in self._messages.values()
            if m.workspace_id == workspace_id
            and m.conversation_id == conversation_id
            and m.direction == "out"
            and m.body_text == body_text
            and m.created_at >= since
        ]
        if not candidates:
            return None
        # max() keeps the first of equal keys; reverse so the latest insert wins ties
        latest = max(reversed(candidates), key=lambda m: m.created_at)
        return latest.model_copy()

    async def find_message_by_idempotency_key(self, workspace_id: str, key: str) -> Optional[Message]:
        mid = self._idempotency_index.get(f"{workspace_id}:{key}")
        return await self.get_message(mid) if mid else None

    async def insert_message(
        self, workspace_id: str, conversation_id: str, body_text: str,
        idempotency_key: Optional[str] = None, actor_id: Optional[str] = None,
    ) -> Message:
        msg = Message(
            workspace_id=workspace_id,
            conversation_id=conversation_id,
            body_text=body_text,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
        )
        self._messages[msg.id] = msg
        if idempotency_key:
            self._idempotency_index[f"{workspace_id}:{idempotency_key}"] = msg.id
        self._mark_dirty("messages")
        return msg.model_copy()

    async def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        mid = self._provider_index.get(provider_message_id)
        return await self.get_message(mid) if mid else None

    async def update_message_status(
        self, message_id: str, status: MessageStatus,
        provider_message_id: Optional[str] = None,
        error_reason: Optional[str] = None,
        expected_status: Optional[MessageStatus] = None,
    ) -> Optional[Message]:
        msg = self._messages.get(message_id)
        if not msg:
            return None
        if expected_status is not None and msg.status != expected_status:
            return msg.model_copy()

        msg.status = status
        msg.error_reason = error_reason
        if provider_message_id:
            msg.provider_message_id = provider_message_id
            self._provider_index[provider_message_id] = msg.id
        msg.updated_at = utcnow()
        self._mark_dirty("messages")
        return msg.model_copy()

    # ── Dispatch events ───────────────────────────────────

    async def append_dispatch_event(
        self, message_id: Optional[str], event_type: DispatchEventType, payload: dict[str, Any],
    ) -> DispatchAttemptEvent:
        event = DispatchAttemptEvent(
            message_id=message_id, event_type=event_type, payload=dict(payload or {}),
        )
        self._events.append(event)
        self._mark_dirty("events")
        return event.model_copy()

    async def list_dispatch_events(self, message_id: Optional[str] = None) -> list[DispatchAttemptEvent]:
        return [
            e.model_copy() for e in self._events
            if message_id is None or e.message_id == message_id
        ]

    # ── Hooks ─────────────────────────────────────────────

    def _mark_dirty(self, collection: str) -> None:
        """Persistence hook; the file store overrides this."""

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "contacts": len(self._contacts),
            "conversations": len(self._conversations),
            "messages": len(self._messages),
            "dispatch_events": len(self._events),
        }
