"""
Dispatch Orchestrator — The single entry point for sending an outbound message.

Flow:
  validate body
    → DedupGuard (idempotency key, then recent identical body)   ─▶ idempotent
    → MessageStateMachine.create (queued)                         ─▶ not_found
    → dry run?                       (dry_run event)              ─▶ dry_run
    → RateLimiter.admit              (rate_limited event)         ─▶ rate_limited
    → PacingDelay
    → resolve destination            (send_failed event)          ─▶ not_found / blocked
    → ProviderSendAdapter.send       (send_success / send_failed) ─▶ sent / failed
    → on_sent hooks via SideEffectWorker

Every branch after creation leaves the Message terminal (or queued for a
dry run) and records exactly one audit event. Errors before creation
return a result and persist nothing.

Usage:
    orch = DispatchOrchestrator(store, provider, enable_send=True, rate_cap_per_minute=20)
    result = await orch.dispatch(DispatchRequest(
        workspace_id="w1", conversation_id="c1", actor_id="u1", body_text="Hello",
    ))
    result.ok, result.outcome, result.message
"""
from __future__ import annotations

import asyncio
import hashlib
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from channels.base import ProviderResponse, ProviderSendAdapter
from core.audit import AuditTrail
from core.dedup import DEFAULT_LOOKBACK_SECONDS, DedupGuard
from core.errors import (
    ContactAddressMissing, ContactBlocked, ConversationNotFound,
    DispatchError, ProviderSendFailed, RateLimited, ValidationError,
)
from core.pacing import PacingDelay
from core.rate_limiter import RateLimiter, SlidingWindowRateLimiter, scope_key_for
from core.reconciliation import StatusReconciler
from core.state_machine import MessageStateMachine
from database.store_base import BaseMessageStore
from job_queue.side_effects import SideEffectWorker
from models.schemas import (
    CommsStatus, DispatchEventType, DispatchOutcome, DispatchRequest,
    Message, MessageStatus,
)
from utils.keyed_lock import KeyedLock

logger = structlog.get_logger()

SentHook = Callable[[Message], Awaitable[Any]]

_OK_OUTCOMES = {DispatchOutcome.SENT, DispatchOutcome.IDEMPOTENT, DispatchOutcome.DRY_RUN}
CANCELLED_REASON = "dispatch_cancelled"


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    message: Optional[Message] = None
    error: Optional[DispatchError] = None

    @property
    def ok(self) -> bool:
        return self.outcome in _OK_OUTCOMES

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "outcome": self.outcome.value,
            "message": self.message.model_dump(mode="json") if self.message else None,
            "error": {"code": self.error.code, "detail": str(self.error)} if self.error else None,
        }

    def __repr__(self):
        mid = self.message.id if self.message else None
        return f"<DispatchResult {self.outcome.value} message={mid}>"


class DispatchOrchestrator:

    def __init__(
        self,
        store: BaseMessageStore,
        provider: ProviderSendAdapter,
        rate_limiter: RateLimiter = None,
        pacing: PacingDelay = None,
        side_effects: SideEffectWorker = None,
        enable_send: bool = False,
        rate_cap_per_minute: int = 0,
        rate_scope: str = "workspace",
        dedup_lookback_seconds: float = DEFAULT_LOOKBACK_SECONDS,
        provider_timeout_s: float = 15.0,
    ):
        self.store = store
        self.provider = provider
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.pacing = pacing or PacingDelay()
        self.side_effects = side_effects or SideEffectWorker()

        self.enable_send = enable_send
        self.rate_cap_per_minute = rate_cap_per_minute
        self.rate_scope = rate_scope
        self.provider_timeout_s = provider_timeout_s

        self.audit = AuditTrail(store)
        self.messages = MessageStateMachine(store)
        self.dedup = DedupGuard(self.messages, lookback_seconds=dedup_lookback_seconds)
        self.reconciler = StatusReconciler(store, self.audit)

        self._intake_locks = KeyedLock()
        self._sent_hooks: list[SentHook] = []

    # ── Hooks ─────────────────────────────────────────────────

    def on_sent(self, hook: SentHook) -> SentHook:
        """Register an async callable run (supervised) after every successful send."""
        self._sent_hooks.append(hook)
        return hook

    def _run_sent_hooks(self, msg: Message):
        for hook in self._sent_hooks:
            name = getattr(hook, "__name__", repr(hook))
            self.side_effects.submit(name, hook, msg)

    # ══════════════════════════════════════════════════════════
    #  DISPATCH
    # ══════════════════════════════════════════════════════════

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        body = (request.body_text or "").strip()
        if not body:
            return DispatchResult(
                DispatchOutcome.INVALID,
                error=ValidationError("body_text must not be empty"),
            )

        ws, conv_id = request.workspace_id, request.conversation_id

        async with self._intake_locks(self._intake_key(request, body)):
            prior = await self.dedup.check(ws, conv_id, body, idempotency_key=request.idempotency_key)
            if prior is not None:
                logger.info("dispatch_deduplicated",
                            message_id=prior.id,
                            status=prior.status.value)
                return DispatchResult(DispatchOutcome.IDEMPOTENT, message=prior)

            try:
                msg = await self.messages.create(
                    ws, conv_id, body,
                    idempotency_key=request.idempotency_key,
                    actor_id=request.actor_id or None,
                )
            except ConversationNotFound as e:
                logger.info("dispatch_conversation_not_found", conversation_id=conv_id)
                return DispatchResult(DispatchOutcome.NOT_FOUND, error=e)

        if not self.enable_send:
            await self.audit.record(msg.id, DispatchEventType.DRY_RUN, {
                "conversation_id": conv_id,
                "actor_id": request.actor_id,
                "body_length": len(body),
            })
            logger.info("dispatch_dry_run", message_id=msg.id)
            return DispatchResult(DispatchOutcome.DRY_RUN, message=msg)

        return await self._send(msg, body)

    @staticmethod
    def _intake_key(request: DispatchRequest, body: str) -> str:
        if request.idempotency_key:
            return f"key:{request.workspace_id}:{request.idempotency_key}"
        digest = hashlib.sha1(body.encode("utf-8")).hexdigest()
        return f"body:{request.workspace_id}:{request.conversation_id}:{digest}"

    async def _send(self, msg: Message, body: str) -> DispatchResult:
        try:
            return await self._admit_and_send(msg, body)
        except asyncio.CancelledError:
            logger.warning("dispatch_cancelled", message_id=msg.id)
            await asyncio.shield(self._abandon(msg))
            raise

    async def _abandon(self, msg: Message):
        """Close out a message whose dispatch was cancelled after creation."""
        try:
            current = await self.messages.mark_failed(msg.id, CANCELLED_REASON)
        except Exception as e:
            logger.error("status_write_failed",
                         message_id=msg.id,
                         to_status=MessageStatus.FAILED.value,
                         error=str(e))
            return
        if current.status != MessageStatus.FAILED or current.error_reason != CANCELLED_REASON:
            # Another branch already finished the message and recorded its event
            return
        await self.audit.record(msg.id, DispatchEventType.SEND_FAILED, {"reason": CANCELLED_REASON})

    async def _admit_and_send(self, msg: Message, body: str) -> DispatchResult:
        # ── Rate limit ──
        scope = scope_key_for(msg.workspace_id, self.rate_scope)
        try:
            admitted = await self.rate_limiter.admit(scope, self.rate_cap_per_minute)
        except Exception as e:
            logger.error("rate_limiter_error", scope=scope, error=str(e))
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, "rate_limiter_unavailable",
                DispatchOutcome.FAILED, ProviderSendFailed("rate_limiter_unavailable", cause=e),
            )
        if not admitted:
            return await self._fail(
                msg, DispatchEventType.RATE_LIMITED, RateLimited.code,
                DispatchOutcome.RATE_LIMITED, RateLimited(scope),
                extra={"scope": scope, "capacity": self.rate_cap_per_minute},
            )

        # ── Pacing (no locks held) ──
        await self.pacing.wait()

        # ── Destination ──
        try:
            destination = await self.store.resolve_conversation_destination(msg.conversation_id)
        except (ConversationNotFound, ContactAddressMissing) as e:
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, e.code, DispatchOutcome.NOT_FOUND, e,
            )

        if destination.comms_status == CommsStatus.BLACKLISTED:
            err = ContactBlocked(destination.contact_id)
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, err.code, DispatchOutcome.BLOCKED, err,
                extra={"contact_id": destination.contact_id},
            )

        # ── Provider call ──
        try:
            response: ProviderResponse = await asyncio.wait_for(
                self.provider.send(destination, body),
                timeout=self.provider_timeout_s,
            )
        except asyncio.TimeoutError:
            err = ProviderSendFailed("provider_timeout", retryable=True)
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, err.reason, DispatchOutcome.FAILED, err,
                extra={"provider": self.provider.name, "timeout_s": self.provider_timeout_s},
            )
        except ProviderSendFailed as e:
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, e.reason, DispatchOutcome.FAILED, e,
                extra={"provider": self.provider.name},
            )
        except Exception as e:
            err = ProviderSendFailed(str(e) or type(e).__name__, cause=e)
            return await self._fail(
                msg, DispatchEventType.SEND_FAILED, err.reason, DispatchOutcome.FAILED, err,
                extra={"provider": self.provider.name},
            )

        try:
            msg = await self.messages.mark_sent(msg.id, response.provider_message_id)
        except Exception as e:
            logger.error("status_write_failed",
                         message_id=msg.id,
                         to_status=MessageStatus.SENT.value,
                         error=str(e))

        await self.audit.record(msg.id, DispatchEventType.SEND_SUCCESS, {
            "provider": self.provider.name,
            "provider_message_id": response.provider_message_id,
            "response": response.raw_response,
        })
        logger.info("dispatch_sent",
                    message_id=msg.id,
                    provider_message_id=response.provider_message_id)

        if self._sent_hooks:
            self._run_sent_hooks(msg)
        return DispatchResult(DispatchOutcome.SENT, message=msg)

    async def _fail(
        self,
        msg: Message,
        event_type: DispatchEventType,
        reason: str,
        outcome: DispatchOutcome,
        error: DispatchError,
        extra: dict[str, Any] = None,
    ) -> DispatchResult:
        try:
            msg = await self.messages.mark_failed(msg.id, reason)
        except Exception as e:
            logger.error("status_write_failed",
                         message_id=msg.id,
                         to_status=MessageStatus.FAILED.value,
                         error=str(e))

        await self.audit.record(msg.id, event_type, {"reason": reason, **(extra or {})})
        logger.warning("dispatch_failed",
                       message_id=msg.id,
                       outcome=outcome.value,
                       reason=reason)
        return DispatchResult(outcome, message=msg, error=error)

    # ══════════════════════════════════════════════════════════
    #  RECONCILIATION
    # ══════════════════════════════════════════════════════════

    async def apply_provider_status(
        self, provider_message_id: str, new_status: MessageStatus,
        error_reason: Optional[str] = None,
    ) -> Optional[Message]:
        return await self.reconciler.apply_provider_status(
            provider_message_id, new_status, error_reason=error_reason,
        )

    async def apply_status_payload(self, payload: dict[str, Any]) -> list[Message]:
        return await self.reconciler.apply_status_payload(payload)

    # ── Lifecycle ─────────────────────────────────────────────

    async def close(self):
        await self.side_effects.stop()
        await self.provider.shutdown()
        await self.rate_limiter.close()
