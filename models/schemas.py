"""
Core data models for the outbound dispatcher.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    # Only reachable through provider status reconciliation
    DELIVERED = "delivered"
    READ = "read"


TERMINAL_STATUSES = frozenset({
    MessageStatus.SENT, MessageStatus.FAILED,
    MessageStatus.DELIVERED, MessageStatus.READ,
})


class DispatchEventType(str, Enum):
    DRY_RUN = "dry_run"
    SEND_SUCCESS = "send_success"
    SEND_FAILED = "send_failed"
    RATE_LIMITED = "rate_limited"
    STATUS_UPDATE = "status_update"


class CommsStatus(str, Enum):
    NORMAL = "normal"
    BLACKLISTED = "blacklisted"


class DispatchOutcome(str, Enum):
    SENT = "sent"
    IDEMPOTENT = "idempotent"
    DRY_RUN = "dry_run"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    BLOCKED = "blocked"
    FAILED = "failed"
    INVALID = "invalid"


# ──────────────────────────────────────────────────────────────
#  Record store entities
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    """The person on the other end of a conversation."""
    id: str = Field(default_factory=new_id)
    workspace_id: str
    name: str = ""
    phone: str = ""
    comms_status: CommsStatus = CommsStatus.NORMAL


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    workspace_id: str
    contact_id: str
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Message(BaseModel):
    """One outbound communication attempt."""
    id: str = Field(default_factory=new_id)
    workspace_id: str
    conversation_id: str
    direction: str = "out"
    body_text: str
    status: MessageStatus = MessageStatus.QUEUED
    provider_message_id: Optional[str] = None
    error_reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    actor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DispatchAttemptEvent(BaseModel):
    """Append-only audit record. Never updated or deleted."""
    id: str = Field(default_factory=new_id)
    message_id: Optional[str] = None
    event_type: DispatchEventType
    payload: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class Destination(BaseModel):
    """Where a conversation's outbound messages go."""
    conversation_id: str
    contact_id: str
    address: str
    comms_status: CommsStatus = CommsStatus.NORMAL


# ──────────────────────────────────────────────────────────────
#  Dispatch request / provider status
# ──────────────────────────────────────────────────────────────

class DispatchRequest(BaseModel):
    workspace_id: str
    conversation_id: str
    actor_id: str = ""
    body_text: str
    idempotency_key: Optional[str] = None


class ProviderStatusUpdate(BaseModel):
    """A delivery receipt reported asynchronously by the provider."""
    provider_message_id: str
    status: MessageStatus
    error_reason: Optional[str] = None
    raw: dict[str, Any] = {}
