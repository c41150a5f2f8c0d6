"""
SqlMessageStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Each public method runs in its own session/transaction: the store promises
row-level atomicity for one message update, nothing wider.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_

from core.errors import ContactAddressMissing, ConversationNotFound
from database.models import ContactRow, ConversationRow, MessageRow, DispatchEventRow
from database.session import get_session
from database.store_base import BaseMessageStore
from models.schemas import (
    CommsStatus, Contact, Conversation, Destination, DispatchAttemptEvent,
    DispatchEventType, Message, MessageStatus, utcnow,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlMessageStore(BaseMessageStore):
    """
    Persistent message store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Contacts / Conversations ───────────────────────────

    async def upsert_contact(self, contact: Contact) -> Contact:
        async with get_session() as db:
            existing = await db.get(ContactRow, contact.id)
            if existing:
                existing.workspace_id = contact.workspace_id
                existing.name = contact.name
                existing.phone = contact.phone
                existing.comms_status = contact.comms_status.value
            else:
                db.add(ContactRow(
                    id=contact.id,
                    workspace_id=contact.workspace_id,
                    name=contact.name,
                    phone=contact.phone,
                    comms_status=contact.comms_status.value,
                ))
            return contact

    async def create_conversation(self, workspace_id: str, contact_id: str,
                                  conversation_id: str = "") -> Conversation:
        async with get_session() as db:
            row = ConversationRow(workspace_id=workspace_id, contact_id=contact_id)
            if conversation_id:
                row.id = conversation_id
            db.add(row)
            await db.flush()
            return self._row_to_conversation(row)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def touch_conversation_last_message_at(self, conversation_id: str, timestamp: datetime) -> None:
        async with get_session() as db:
            await db.execute(
                update(ConversationRow)
                .where(ConversationRow.id == conversation_id)
                .values(last_message_at=timestamp)
            )

    async def resolve_conversation_destination(self, conversation_id: str) -> Destination:
        async with get_session() as db:
            conv = await db.get(ConversationRow, conversation_id)
            if not conv:
                raise ConversationNotFound(conversation_id)
            contact = await db.get(ContactRow, conv.contact_id)
            if not contact or not contact.phone:
                raise ContactAddressMissing(conversation_id)
            return Destination(
                conversation_id=conversation_id,
                contact_id=contact.id,
                address=contact.phone,
                comms_status=CommsStatus(contact.comms_status or "normal"),
            )

    # ── Messages ───────────────────────────────────────────

    async def find_recent_outbound_message(
        self, workspace_id: str, conversation_id: str, body_text: str, since: datetime,
    ) -> Optional[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.workspace_id == workspace_id,
                    MessageRow.conversation_id == conversation_id,
                    MessageRow.direction == "out",
                    MessageRow.body_text == body_text,
                    MessageRow.created_at >= since,
                ))
                .order_by(MessageRow.created_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def find_message_by_idempotency_key(self, workspace_id: str, key: str) -> Optional[Message]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.workspace_id == workspace_id,
                    MessageRow.idempotency_key == key,
                ))
                .order_by(MessageRow.created_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def insert_message(
        self, workspace_id: str, conversation_id: str, body_text: str,
        idempotency_key: Optional[str] = None, actor_id: Optional[str] = None,
    ) -> Message:
        async with get_session() as db:
            now = utcnow()
            row = MessageRow(
                workspace_id=workspace_id,
                conversation_id=conversation_id,
                direction="out",
                body_text=body_text,
                status=MessageStatus.QUEUED.value,
                idempotency_key=idempotency_key,
                actor_id=actor_id,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            await db.flush()
            return self._row_to_message(row)

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with get_session() as db:
            row = await db.get(MessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def find_message_by_provider_id(self, provider_message_id: str) -> Optional[Message]:
        async with get_session() as db:
            stmt = select(MessageRow).where(MessageRow.provider_message_id == provider_message_id).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def update_message_status(
        self, message_id: str, status: MessageStatus,
        provider_message_id: Optional[str] = None,
        error_reason: Optional[str] = None,
        expected_status: Optional[MessageStatus] = None,
    ) -> Optional[Message]:
        async with get_session() as db:
            values: dict[str, Any] = {
                "status": status.value,
                "error_reason": error_reason,
                "updated_at": utcnow(),
            }
            if provider_message_id:
                values["provider_message_id"] = provider_message_id

            conditions = [MessageRow.id == message_id]
            if expected_status is not None:
                conditions.append(MessageRow.status == expected_status.value)

            await db.execute(update(MessageRow).where(and_(*conditions)).values(**values))
            row = await db.get(MessageRow, message_id, populate_existing=True)
            return self._row_to_message(row) if row else None

    # ── Dispatch events ────────────────────────────────────

    async def append_dispatch_event(
        self, message_id: Optional[str], event_type: DispatchEventType, payload: dict[str, Any],
    ) -> DispatchAttemptEvent:
        async with get_session() as db:
            row = DispatchEventRow(
                message_id=message_id,
                event_type=event_type.value,
                payload=dict(payload or {}),
                created_at=utcnow(),
            )
            db.add(row)
            await db.flush()
            return self._row_to_event(row)

    async def list_dispatch_events(self, message_id: Optional[str] = None) -> list[DispatchAttemptEvent]:
        async with get_session() as db:
            stmt = select(DispatchEventRow).order_by(DispatchEventRow.created_at)
            if message_id is not None:
                stmt = stmt.where(DispatchEventRow.message_id == message_id)
            result = await db.execute(stmt)
            return [self._row_to_event(r) for r in result.scalars().all()]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            workspace_id=row.workspace_id,
            contact_id=row.contact_id,
            last_message_at=_aware(row.last_message_at),
            created_at=_aware(row.created_at) or utcnow(),
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            workspace_id=row.workspace_id,
            conversation_id=row.conversation_id,
            direction=row.direction,
            body_text=row.body_text,
            status=MessageStatus(row.status),
            provider_message_id=row.provider_message_id,
            error_reason=row.error_reason,
            idempotency_key=row.idempotency_key,
            actor_id=row.actor_id,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_event(row: DispatchEventRow) -> DispatchAttemptEvent:
        return DispatchAttemptEvent(
            id=row.id,
            message_id=row.message_id,
            event_type=DispatchEventType(row.event_type),
            payload=row.payload or {},
            created_at=_aware(row.created_at),
        )
