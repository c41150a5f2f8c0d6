"""
Message State Machine — Owns the outbound Message lifecycle and its persistence.

    queued ──mark_sent──▶ sent
       └────mark_failed──▶ failed

Status only moves forward. Both transitions are conditional on the row
still being ``queued``, so a second (or racing) transition is a no-op that
returns the message as it already is. Delivery receipts (delivered/read)
are applied by ``core.reconciliation``, never here.

Usage:
    sm = MessageStateMachine(store)
    msg = await sm.create("w1", "c1", "Hello")
    msg = await sm.mark_sent(msg.id, "wamid.123")
"""
from __future__ import annotations

import structlog
from typing import Optional

from core.errors import ConversationNotFound, MessageNotFound
from database.store_base import BaseMessageStore
from models.schemas import Message, MessageStatus

logger = structlog.get_logger()


class MessageStateMachine:

    def __init__(self, store: BaseMessageStore):
        self.store = store

    # ── Read path (used by DedupGuard) ────────────────────────

    async def get(self, message_id: str) -> Optional[Message]:
        return await self.store.get_message(message_id)

    async def find_recent(self, workspace_id: str, conversation_id: str,
                          body_text: str, since) -> Optional[Message]:
        return await self.store.find_recent_outbound_message(
            workspace_id, conversation_id, body_text, since,
        )

    async def find_by_idempotency_key(self, workspace_id: str, key: str) -> Optional[Message]:
        return await self.store.find_message_by_idempotency_key(workspace_id, key)

    # ── Creation ──────────────────────────────────────────────

    async def create(
        self,
        workspace_id: str,
        conversation_id: str,
        body_text: str,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Message:
        conv = await self.store.get_conversation(conversation_id)
        if not conv or conv.workspace_id != workspace_id:
            raise ConversationNotFound(conversation_id)

        msg = await self.store.insert_message(
            workspace_id, conversation_id, body_text,
            idempotency_key=idempotency_key, actor_id=actor_id,
        )

        try:
            await self.store.touch_conversation_last_message_at(conversation_id, msg.created_at)
        except Exception as e:
            logger.warning("conversation_touch_failed",
                           conversation_id=conversation_id,
                           message_id=msg.id,
                           error=str(e))

        logger.info("message_created",
                    message_id=msg.id,
                    workspace_id=workspace_id,
                    conversation_id=conversation_id)
        return msg

    # ── Terminal transitions ──────────────────────────────────

    async def mark_sent(self, message_id: str, provider_message_id: str) -> Message:
        return await self._finish(
            message_id, MessageStatus.SENT,
            provider_message_id=provider_message_id,
            error_reason=None,
        )

    async def mark_failed(self, message_id: str, error_reason: str) -> Message:
        return await self._finish(
            message_id, MessageStatus.FAILED,
            error_reason=error_reason,
        )

    async def _finish(
        self,
        message_id: str,
        status: MessageStatus,
        provider_message_id: Optional[str] = None,
        error_reason: Optional[str] = None,
    ) -> Message:
        current = await self.store.get_message(message_id)
        if current is None:
            raise MessageNotFound(message_id)

        if current.is_terminal:
            logger.info("transition_ignored_terminal",
                        message_id=message_id,
                        status=current.status.value,
                        requested=status.value)
            return current

        updated = await self.store.update_message_status(
            message_id, status,
            provider_message_id=provider_message_id,
            error_reason=error_reason,
            expected_status=MessageStatus.QUEUED,
        )
        if updated is None:
            raise MessageNotFound(message_id)

        if updated.status != status:
            # Lost the race to another transition
            logger.info("transition_ignored_terminal",
                        message_id=message_id,
                        status=updated.status.value,
                        requested=status.value)
        else:
            logger.info("message_transitioned",
                        message_id=message_id,
                        to_status=status.value,
                        provider_message_id=provider_message_id,
                        error_reason=error_reason)
        return updated
