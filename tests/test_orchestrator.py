"""
Tests for the dispatch orchestrator.

Covers:
  - Happy path, dry run, validation
  - Dedup (recent body, idempotency key, failure bypass, concurrent submits)
  - Rate limiting, destination failures, blacklisted contacts
  - Provider failures and timeouts
  - Exactly one audit event per non-dedup outcome
  - Infrastructure failures (audit write, status write, rate limiter backend)
  - on_sent side-effect hooks
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from channels.base import ProviderResponse, ProviderSendAdapter
from channels.mock_adapter import MockProviderAdapter
from core.pacing import PacingDelay
from models.schemas import (
    Contact, DispatchEventType, DispatchOutcome, MessageStatus,
)

WORKSPACE = "ws-001"
CONVERSATION = "conv-001"
PHONE = "+6281234567890"


class ExplodingProvider(ProviderSendAdapter):
    name = "exploding"

    async def _do_send(self, destination, body) -> ProviderResponse:
        raise RuntimeError("connection reset by peer")


# ──────────────────────────────────────────────────────────────
#  Happy path / dry run / validation
# ──────────────────────────────────────────────────────────────

class TestDispatchBasics:
    @pytest.mark.asyncio
    async def test_send_success(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello"))

        assert result.ok
        assert result.outcome == DispatchOutcome.SENT
        assert result.message.status == MessageStatus.SENT
        assert result.message.provider_message_id == "wamid.123"
        assert result.message.error_reason is None
        assert provider.calls == [{"to": PHONE, "body": "Hello"}]

        stored = await seeded_store.get_message(result.message.id)
        assert stored.status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_send_success_records_one_event_with_raw_response(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello"))

        events = await seeded_store.list_dispatch_events(result.message.id)
        assert len(events) == 1
        assert events[0].event_type == DispatchEventType.SEND_SUCCESS
        assert events[0].payload["provider_message_id"] == "wamid.123"
        assert events[0].payload["response"] == {"messages": [{"id": "wamid.123"}]}

    @pytest.mark.asyncio
    async def test_dry_run(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator(enable_send=False)
        result = await orch.dispatch(request_factory("Hello"))

        assert result.ok
        assert result.outcome == DispatchOutcome.DRY_RUN
        assert result.message.status == MessageStatus.QUEUED
        assert provider.call_count == 0

        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.DRY_RUN]

    @pytest.mark.asyncio
    async def test_empty_body_rejected_without_persistence(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("   \n\t "))

        assert not result.ok
        assert result.outcome == DispatchOutcome.INVALID
        assert result.error.code == "validation_error"
        assert seeded_store.stats()["messages"] == 0
        assert seeded_store.stats()["dispatch_events"] == 0

    @pytest.mark.asyncio
    async def test_body_is_trimmed(self, make_orchestrator, provider, request_factory):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("  Hello there  "))
        assert result.message.body_text == "Hello there"
        assert provider.calls[0]["body"] == "Hello there"

    @pytest.mark.asyncio
    async def test_conversation_last_message_at_touched(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator(enable_send=False)
        result = await orch.dispatch(request_factory("Hello"))
        conv = await seeded_store.get_conversation(CONVERSATION)
        assert conv.last_message_at == result.message.created_at

    @pytest.mark.asyncio
    async def test_actor_recorded(self, make_orchestrator, request_factory):
        orch = make_orchestrator(enable_send=False)
        result = await orch.dispatch(request_factory("Hello", actor_id="agent-7"))
        assert result.message.actor_id == "agent-7"

    @pytest.mark.asyncio
    async def test_result_to_dict(self, make_orchestrator, request_factory):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello"))
        data = result.to_dict()
        assert data["ok"] is True
        assert data["outcome"] == "sent"
        assert data["message"]["status"] == "sent"
        assert data["error"] is None


# ──────────────────────────────────────────────────────────────
#  Dedup
# ──────────────────────────────────────────────────────────────

class TestDispatchDedup:
    @pytest.mark.asyncio
    async def test_repeat_within_window_returns_prior_message(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator()
        first = await orch.dispatch(request_factory("Hello"))
        second = await orch.dispatch(request_factory("Hello"))

        assert second.ok
        assert second.outcome == DispatchOutcome.IDEMPOTENT
        assert second.message.id == first.message.id
        assert provider.call_count == 1
        assert seeded_store.stats()["messages"] == 1
        # Dedup hit records nothing
        assert seeded_store.stats()["dispatch_events"] == 1

    @pytest.mark.asyncio
    async def test_repeat_after_dry_run_is_deduplicated(self, make_orchestrator, request_factory):
        orch = make_orchestrator(enable_send=False)
        first = await orch.dispatch(request_factory("Hello"))
        second = await orch.dispatch(request_factory("Hello"))
        assert second.outcome == DispatchOutcome.IDEMPOTENT
        assert second.message.id == first.message.id

    @pytest.mark.asyncio
    async def test_failed_prior_does_not_short_circuit(self, make_orchestrator, provider, request_factory, seeded_store):
        provider.fail_with = "network timeout"
        orch = make_orchestrator()
        first = await orch.dispatch(request_factory("Hello"))
        assert first.message.status == MessageStatus.FAILED

        provider.fail_with = None
        second = await orch.dispatch(request_factory("Hello"))

        assert second.outcome == DispatchOutcome.SENT
        assert second.message.id != first.message.id
        assert provider.call_count == 2
        assert seeded_store.stats()["messages"] == 2

    @pytest.mark.asyncio
    async def test_different_body_is_not_deduplicated(self, make_orchestrator, provider, request_factory):
        orch = make_orchestrator()
        await orch.dispatch(request_factory("Hello"))
        result = await orch.dispatch(request_factory("Hello!"))
        assert result.outcome == DispatchOutcome.SENT
        assert provider.call_count == 2

    @pytest.mark.asyncio
    async def test_idempotency_key_returns_stored_message(self, make_orchestrator, provider, request_factory):
        orch = make_orchestrator()
        first = await orch.dispatch(request_factory("Hello", idempotency_key="req-1"))
        second = await orch.dispatch(request_factory("Different text", idempotency_key="req-1"))

        assert second.outcome == DispatchOutcome.IDEMPOTENT
        assert second.message.id == first.message.id
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_hit_even_when_failed(self, make_orchestrator, provider, request_factory):
        provider.fail_with = "boom"
        orch = make_orchestrator()
        first = await orch.dispatch(request_factory("Hello", idempotency_key="req-2"))
        provider.fail_with = None
        second = await orch.dispatch(request_factory("Hello", idempotency_key="req-2"))

        assert second.outcome == DispatchOutcome.IDEMPOTENT
        assert second.message.id == first.message.id
        assert second.message.status == MessageStatus.FAILED
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_submits_collapse(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator()
        results = await asyncio.gather(
            orch.dispatch(request_factory("Hello")),
            orch.dispatch(request_factory("Hello")),
        )
        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["idempotent", "sent"]
        assert results[0].message.id == results[1].message.id
        assert provider.call_count == 1
        assert seeded_store.stats()["messages"] == 1


# ──────────────────────────────────────────────────────────────
#  Rate limiting
# ──────────────────────────────────────────────────────────────

class TestDispatchRateLimit:
    @pytest.mark.asyncio
    async def test_concurrent_dispatches_capacity_one(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator(rate_cap_per_minute=1)
        results = await asyncio.gather(
            orch.dispatch(request_factory("First")),
            orch.dispatch(request_factory("Second")),
        )
        by_outcome = {r.outcome: r for r in results}
        assert set(by_outcome) == {DispatchOutcome.SENT, DispatchOutcome.RATE_LIMITED}
        assert provider.call_count == 1

        limited = by_outcome[DispatchOutcome.RATE_LIMITED]
        assert not limited.ok
        assert limited.error.code == "rate_limited"
        assert limited.message.status == MessageStatus.FAILED
        assert limited.message.error_reason == "rate_limited"

        events = await seeded_store.list_dispatch_events(limited.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.RATE_LIMITED]
        assert events[0].payload["scope"] == f"workspace:{WORKSPACE}"

    @pytest.mark.asyncio
    async def test_unlimited_when_capacity_zero(self, make_orchestrator, provider, request_factory):
        orch = make_orchestrator(rate_cap_per_minute=0)
        for i in range(5):
            result = await orch.dispatch(request_factory(f"Message {i}"))
            assert result.outcome == DispatchOutcome.SENT
        assert provider.call_count == 5

    @pytest.mark.asyncio
    async def test_dry_run_does_not_consume_rate_budget(self, make_orchestrator, request_factory):
        limiter = AsyncMock()
        orch = make_orchestrator(enable_send=False, rate_limiter=limiter, rate_cap_per_minute=1)
        await orch.dispatch(request_factory("Hello"))
        limiter.admit.assert_not_called()

    @pytest.mark.asyncio
    async def test_rate_limiter_backend_error_fails_message(self, make_orchestrator, provider, request_factory, seeded_store):
        limiter = AsyncMock()
        limiter.admit.side_effect = ConnectionError("redis down")
        orch = make_orchestrator(rate_limiter=limiter, rate_cap_per_minute=10)
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.FAILED
        assert result.message.error_reason == "rate_limiter_unavailable"
        assert provider.call_count == 0
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.SEND_FAILED]


# ──────────────────────────────────────────────────────────────
#  Destination
# ──────────────────────────────────────────────────────────────

class TestDispatchDestination:
    @pytest.mark.asyncio
    async def test_unknown_conversation_is_not_found_without_persistence(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello", conversation_id="nope"))

        assert result.outcome == DispatchOutcome.NOT_FOUND
        assert result.error.code == "conversation_not_found"
        assert result.message is None
        assert seeded_store.stats()["messages"] == 0

    @pytest.mark.asyncio
    async def test_conversation_in_other_workspace_is_not_found(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello", workspace_id="ws-other"))
        assert result.outcome == DispatchOutcome.NOT_FOUND
        assert seeded_store.stats()["messages"] == 0

    @pytest.mark.asyncio
    async def test_contact_without_phone(self, make_orchestrator, provider, request_factory, seeded_store):
        await seeded_store.upsert_contact(Contact(id="contact-nophone", workspace_id=WORKSPACE, phone=""))
        await seeded_store.create_conversation(WORKSPACE, "contact-nophone", conversation_id="conv-nophone")
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello", conversation_id="conv-nophone"))

        assert result.outcome == DispatchOutcome.NOT_FOUND
        assert result.message.status == MessageStatus.FAILED
        assert result.message.error_reason == "contact_address_missing"
        assert provider.call_count == 0
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.SEND_FAILED]

    @pytest.mark.asyncio
    async def test_blacklisted_contact_blocked(self, make_orchestrator, provider, request_factory, seeded_store, blacklisted_conversation):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello", conversation_id=blacklisted_conversation))

        assert result.outcome == DispatchOutcome.BLOCKED
        assert result.error.code == "contact_blacklisted"
        assert result.message.status == MessageStatus.FAILED
        assert result.message.error_reason == "contact_blacklisted"
        assert provider.call_count == 0
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert len(events) == 1
        assert events[0].event_type == DispatchEventType.SEND_FAILED


# ──────────────────────────────────────────────────────────────
#  Provider failures
# ──────────────────────────────────────────────────────────────

class TestDispatchProviderFailures:
    @pytest.mark.asyncio
    async def test_provider_error(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator(provider=MockProviderAdapter(fail_with="network timeout"))
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.FAILED
        assert result.error.code == "provider_send_failed"
        assert result.message.status == MessageStatus.FAILED
        assert result.message.error_reason == "network timeout"

        events = await seeded_store.list_dispatch_events(result.message.id)
        assert len(events) == 1
        assert events[0].event_type == DispatchEventType.SEND_FAILED
        assert events[0].payload["reason"] == "network timeout"

    @pytest.mark.asyncio
    async def test_unexpected_exception_converted(self, make_orchestrator, request_factory):
        orch = make_orchestrator(provider=ExplodingProvider())
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.FAILED
        assert result.message.error_reason == "connection reset by peer"
        assert isinstance(result.error.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_provider_timeout(self, make_orchestrator, request_factory, seeded_store):
        slow = MockProviderAdapter(delay_s=5.0)
        orch = make_orchestrator(provider=slow, provider_timeout_s=0.05)
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.FAILED
        assert result.message.error_reason == "provider_timeout"
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.SEND_FAILED]

    @pytest.mark.asyncio
    async def test_cancelled_during_provider_call(self, make_orchestrator, request_factory, seeded_store):
        slow = MockProviderAdapter(delay_s=5.0)
        orch = make_orchestrator(provider=slow)
        task = asyncio.create_task(orch.dispatch(request_factory("Hello")))
        await asyncio.sleep(0.05)
        assert slow.call_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        events = await seeded_store.list_dispatch_events()
        assert len(events) == 1
        assert events[0].event_type == DispatchEventType.SEND_FAILED
        assert events[0].payload["reason"] == "dispatch_cancelled"
        msg = await seeded_store.get_message(events[0].message_id)
        assert msg.status == MessageStatus.FAILED
        assert msg.error_reason == "dispatch_cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_during_pacing(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator(pacing=PacingDelay(5000, 5000))
        task = asyncio.create_task(orch.dispatch(request_factory("Hello")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert provider.call_count == 0
        events = await seeded_store.list_dispatch_events()
        assert [e.payload["reason"] for e in events] == ["dispatch_cancelled"]
        assert (await seeded_store.get_message(events[0].message_id)).status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancelled_message_does_not_block_resend(self, make_orchestrator, request_factory):
        orch = make_orchestrator(pacing=PacingDelay(5000, 5000))
        task = asyncio.create_task(orch.dispatch(request_factory("Hello")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        orch.pacing = PacingDelay(0, 0)
        result = await orch.dispatch(request_factory("Hello"))
        assert result.outcome == DispatchOutcome.SENT

    @pytest.mark.asyncio
    async def test_provider_metrics_tracked(self, make_orchestrator, request_factory):
        failing = MockProviderAdapter(fail_with="rejected")
        orch = make_orchestrator(provider=failing)
        await orch.dispatch(request_factory("Hello"))
        health = await failing.health_check()
        assert health["metrics"]["failed"] == 1
        assert health["metrics"]["recent_errors"] == ["rejected"]


# ──────────────────────────────────────────────────────────────
#  Infrastructure failures
# ──────────────────────────────────────────────────────────────

class TestDispatchInfrastructureFailures:
    @pytest.mark.asyncio
    async def test_audit_write_failure_does_not_fail_dispatch(self, make_orchestrator, request_factory, seeded_store):
        seeded_store.append_dispatch_event = AsyncMock(side_effect=RuntimeError("disk full"))
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.SENT
        assert result.message.status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_status_write_failure_still_reports_provider_outcome(self, make_orchestrator, provider, request_factory, seeded_store):
        orch = make_orchestrator()
        seeded_store.update_message_status = AsyncMock(side_effect=RuntimeError("db gone"))
        result = await orch.dispatch(request_factory("Hello"))

        assert result.outcome == DispatchOutcome.SENT
        assert provider.call_count == 1
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.SEND_SUCCESS]


# ──────────────────────────────────────────────────────────────
#  Exactly one event per outcome
# ──────────────────────────────────────────────────────────────

class TestOneEventPerOutcome:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("setup, expected", [
        ({"enable_send": False}, DispatchEventType.DRY_RUN),
        ({}, DispatchEventType.SEND_SUCCESS),
        ({"provider": MockProviderAdapter(fail_with="x")}, DispatchEventType.SEND_FAILED),
    ])
    async def test_single_event(self, make_orchestrator, request_factory, seeded_store, setup, expected):
        orch = make_orchestrator(**setup)
        result = await orch.dispatch(request_factory("Hello"))
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [expected]

    @pytest.mark.asyncio
    async def test_rate_limited_single_event(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator(rate_cap_per_minute=1)
        await orch.dispatch(request_factory("One"))
        result = await orch.dispatch(request_factory("Two"))
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [DispatchEventType.RATE_LIMITED]


# ──────────────────────────────────────────────────────────────
#  on_sent hooks
# ──────────────────────────────────────────────────────────────

class TestSentHooks:
    @pytest.mark.asyncio
    async def test_hook_runs_after_send(self, make_orchestrator, request_factory):
        orch = make_orchestrator()
        seen = []

        @orch.on_sent
        async def crm_sync(message):
            seen.append(message.id)

        result = await orch.dispatch(request_factory("Hello"))
        await orch.side_effects.drain()
        assert seen == [result.message.id]
        await orch.close()

    @pytest.mark.asyncio
    async def test_hook_not_run_on_failure_or_dry_run(self, make_orchestrator, provider, request_factory):
        orch = make_orchestrator(enable_send=False)
        hook = AsyncMock()
        orch.on_sent(hook)
        await orch.dispatch(request_factory("Hello"))
        await orch.side_effects.drain()
        hook.assert_not_called()
        await orch.close()

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_affect_result(self, make_orchestrator, request_factory):
        orch = make_orchestrator()

        @orch.on_sent
        async def broken_hook(message):
            raise ValueError("webhook 500")

        result = await orch.dispatch(request_factory("Hello"))
        await orch.side_effects.drain()
        assert result.outcome == DispatchOutcome.SENT
        assert orch.side_effects.failed == 1
        await orch.close()


# ──────────────────────────────────────────────────────────────
#  Reconciliation through the orchestrator
# ──────────────────────────────────────────────────────────────

class TestDispatchThenReconcile:
    @pytest.mark.asyncio
    async def test_delivered_after_send(self, make_orchestrator, request_factory, seeded_store):
        orch = make_orchestrator()
        result = await orch.dispatch(request_factory("Hello"))
        updated = await orch.apply_provider_status("wamid.123", MessageStatus.DELIVERED)

        assert updated.id == result.message.id
        assert updated.status == MessageStatus.DELIVERED
        events = await seeded_store.list_dispatch_events(result.message.id)
        assert [e.event_type for e in events] == [
            DispatchEventType.SEND_SUCCESS, DispatchEventType.STATUS_UPDATE,
        ]
