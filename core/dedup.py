"""
DedupGuard — Short-circuits duplicate sends of the same text to the same conversation.

Two checks, in order:
  1. Idempotency key: a Message already stored under the caller's key is
     returned whatever its status.
  2. Body match: the most recent outbound Message in the conversation with
     byte-identical body_text created inside the lookback window. A match
     whose status is ``failed`` does NOT short-circuit, so an operator can
     resend after a failure.

Read-only. Serializing check + insert is the orchestrator's job.
"""
from __future__ import annotations

import structlog
from datetime import timedelta
from typing import Optional

from core.state_machine import MessageStateMachine
from models.schemas import Message, MessageStatus, utcnow

logger = structlog.get_logger()

DEFAULT_LOOKBACK_SECONDS = 30.0


class DedupGuard:

    def __init__(self, messages: MessageStateMachine, lookback_seconds: float = DEFAULT_LOOKBACK_SECONDS):
        self.messages = messages
        self.lookback_seconds = lookback_seconds

    async def check(
        self,
        workspace_id: str,
        conversation_id: str,
        body_text: str,
        idempotency_key: Optional[str] = None,
        lookback_seconds: Optional[float] = None,
    ) -> Optional[Message]:
        """Return the prior Message this request duplicates, or None to proceed."""
        if idempotency_key:
            prior = await self.messages.find_by_idempotency_key(workspace_id, idempotency_key)
            if prior is not None:
                logger.info("dedup_hit",
                            kind="idempotency_key",
                            message_id=prior.id,
                            status=prior.status.value)
                return prior

        window = self.lookback_seconds if lookback_seconds is None else lookback_seconds
        since = utcnow() - timedelta(seconds=window)
        prior = await self.messages.find_recent(workspace_id, conversation_id, body_text, since)
        if prior is None:
            return None

        if prior.status == MessageStatus.FAILED:
            logger.info("dedup_bypassed_failed",
                        message_id=prior.id,
                        conversation_id=conversation_id)
            return None

        logger.info("dedup_hit",
                    kind="recent_body",
                    message_id=prior.id,
                    status=prior.status.value)
        return prior
