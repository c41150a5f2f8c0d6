"""Tests for DedupGuard: lookback window, failure bypass, idempotency keys."""
from datetime import timedelta

import pytest

from core.dedup import DedupGuard
from core.state_machine import MessageStateMachine
from models.schemas import MessageStatus, utcnow

WORKSPACE = "ws-001"
CONVERSATION = "conv-001"


@pytest.fixture
def sm(seeded_store):
    return MessageStateMachine(seeded_store)


@pytest.fixture
def guard(sm):
    return DedupGuard(sm, lookback_seconds=30)


class TestDedupGuard:
    @pytest.mark.asyncio
    async def test_no_prior_message(self, guard):
        assert await guard.check(WORKSPACE, CONVERSATION, "Hello") is None

    @pytest.mark.asyncio
    async def test_recent_queued_message_hits(self, guard, sm):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        hit = await guard.check(WORKSPACE, CONVERSATION, "Hello")
        assert hit is not None
        assert hit.id == msg.id

    @pytest.mark.asyncio
    async def test_recent_sent_message_hits(self, guard, sm):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        await sm.mark_sent(msg.id, "wamid.1")
        hit = await guard.check(WORKSPACE, CONVERSATION, "Hello")
        assert hit.status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_failed_message_bypassed(self, guard, sm):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        await sm.mark_failed(msg.id, "network timeout")
        assert await guard.check(WORKSPACE, CONVERSATION, "Hello") is None

    @pytest.mark.asyncio
    async def test_only_most_recent_candidate_considered(self, guard, sm):
        older = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        await sm.mark_sent(older.id, "wamid.1")
        newer = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        await sm.mark_failed(newer.id, "boom")
        # The newest match failed, so the request proceeds even though an older one was sent
        assert await guard.check(WORKSPACE, CONVERSATION, "Hello") is None

    @pytest.mark.asyncio
    async def test_outside_lookback_not_matched(self, guard, sm, seeded_store):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        seeded_store._messages[msg.id].created_at = utcnow() - timedelta(seconds=31)
        assert await guard.check(WORKSPACE, CONVERSATION, "Hello") is None

    @pytest.mark.asyncio
    async def test_custom_lookback_per_call(self, guard, sm, seeded_store):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        seeded_store._messages[msg.id].created_at = utcnow() - timedelta(seconds=45)
        hit = await guard.check(WORKSPACE, CONVERSATION, "Hello", lookback_seconds=60)
        assert hit.id == msg.id

    @pytest.mark.asyncio
    async def test_exact_match_only(self, guard, sm):
        await sm.create(WORKSPACE, CONVERSATION, "Hello")
        assert await guard.check(WORKSPACE, CONVERSATION, "hello") is None
        assert await guard.check(WORKSPACE, CONVERSATION, "Hello ") is None

    @pytest.mark.asyncio
    async def test_scoped_to_conversation(self, guard, sm, seeded_store):
        await seeded_store.create_conversation(WORKSPACE, "contact-001", conversation_id="conv-002")
        await sm.create(WORKSPACE, CONVERSATION, "Hello")
        assert await guard.check(WORKSPACE, "conv-002", "Hello") is None

    @pytest.mark.asyncio
    async def test_idempotency_key_hit_regardless_of_status(self, guard, sm):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello", idempotency_key="req-1")
        await sm.mark_failed(msg.id, "boom")
        hit = await guard.check(WORKSPACE, CONVERSATION, "Other body", idempotency_key="req-1")
        assert hit.id == msg.id
        assert hit.status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_idempotency_key_scoped_to_workspace(self, guard, sm):
        await sm.create(WORKSPACE, CONVERSATION, "Hello", idempotency_key="req-1")
        assert await guard.check("ws-other", CONVERSATION, "Bye", idempotency_key="req-1") is None

    @pytest.mark.asyncio
    async def test_unknown_key_falls_back_to_body_match(self, guard, sm):
        msg = await sm.create(WORKSPACE, CONVERSATION, "Hello")
        hit = await guard.check(WORKSPACE, CONVERSATION, "Hello", idempotency_key="new-key")
        assert hit.id == msg.id
