"""
Abstract Message Store — Interface for all storage backends.

Implementations:
  - SqlMessageStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessageStore (dict-based, single-process, no persistence)
  - FileMessageStore     (JSON files on disk, single-process, durable)

The store gives row-level atomicity for a single Message update but no
transaction spanning a Message update and a dispatch event append.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Contact, Conversation, Destination, DispatchAttemptEvent,
    DispatchEventType, Message, MessageStatus,
)


class BaseMessageStore(ABC):
    """Interface that all message store backends must implement."""

    # ── Contacts / Conversations ──────────────────────────────

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact:
        ...

    @abstractmethod
    async def create_conversation(self, workspace_id: str, contact_id: str,
                                  conversation_id: str = "") -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def touch_conversation_last_message_at(self, conversation_id: str, timestamp: datetime) -> None:
        ...

    @abstractmethod
    async def resolve_conversation_destination(self, conversation_id: str) -> Destination:
        """
        Return the conversation's destination.
        Raises ConversationNotFound or ContactAddressMissing.
        """
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def find_recent_outbound_message(
        self, workspace_id: str, conversation_id: str, body_text: str, since: datetime,
    ) -> Optional[Message]:
        """Most recent outbound message with identical body created at or after ``since``."""
        ...

    @abstractmethod
    async def find_message_by_idempotency_key(self, workspace_id: str, key: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def insert_message(
        self, workspace_id: str, conversation_id: str, body_text: str,
        idempotency_key: Optional[str] = None, actor_id: Optional[str] = None,
    ) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def update_message_status(
        self, message_id: str, status: MessageStatus,
        provider_message_id: Optional[str] = None,
        error_reason: Optional[str] = None,
        expected_status: Optional[MessageStatus] = None,
    ) -> Optional[Message]:
        """
        Set status/provider id/error reason in one row update.

        When ``expected_status`` is given the update only applies if the row
        still has that status. Returns the row as it stands afterwards, or
        None if the message does not exist.
        """
        ...

    # ── Dispatch events ───────────────────────────────────────

    @abstractmethod
    async def append_dispatch_event(
        self, message_id: Optional[str], event_type: DispatchEventType, payload: dict[str, Any],
    ) -> DispatchAttemptEvent:
        ...

    @abstractmethod
    async def list_dispatch_events(self, message_id: Optional[str] = None) -> list[DispatchAttemptEvent]:
        """Events in append order, optionally filtered by message."""
        ...
