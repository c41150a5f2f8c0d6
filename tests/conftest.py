"""Shared test fixtures for the outbound dispatcher."""
import pytest
import pytest_asyncio

from channels.mock_adapter import MockProviderAdapter
from core.orchestrator import DispatchOrchestrator
from core.pacing import PacingDelay
from core.rate_limiter import SlidingWindowRateLimiter
from database.store_memory import InMemoryMessageStore
from models.schemas import CommsStatus, Contact, DispatchRequest

WORKSPACE = "ws-001"
CONVERSATION = "conv-001"
PHONE = "+6281234567890"


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest_asyncio.fixture
async def seeded_store(store) -> InMemoryMessageStore:
    """A workspace with one contact and one conversation."""
    await store.upsert_contact(Contact(
        id="contact-001", workspace_id=WORKSPACE, name="Budi Santoso", phone=PHONE,
    ))
    await store.create_conversation(WORKSPACE, "contact-001", conversation_id=CONVERSATION)
    return store


@pytest_asyncio.fixture
async def blacklisted_conversation(seeded_store) -> str:
    await seeded_store.upsert_contact(Contact(
        id="contact-002", workspace_id=WORKSPACE, name="Opted Out",
        phone="+6289999999999", comms_status=CommsStatus.BLACKLISTED,
    ))
    conv = await seeded_store.create_conversation(WORKSPACE, "contact-002", conversation_id="conv-blocked")
    return conv.id


@pytest.fixture
def provider() -> MockProviderAdapter:
    return MockProviderAdapter(provider_message_id="wamid.123")


@pytest.fixture
def make_orchestrator(seeded_store, provider):
    """Build an orchestrator with zero pacing; override any constructor kwarg."""
    def _make(**overrides) -> DispatchOrchestrator:
        kwargs = dict(
            store=seeded_store,
            provider=provider,
            rate_limiter=SlidingWindowRateLimiter(),
            pacing=PacingDelay(0, 0),
            enable_send=True,
            rate_cap_per_minute=0,
        )
        kwargs.update(overrides)
        return DispatchOrchestrator(**kwargs)
    return _make


@pytest.fixture
def request_factory():
    def _req(body: str = "Hello", **overrides) -> DispatchRequest:
        data = dict(
            workspace_id=WORKSPACE,
            conversation_id=CONVERSATION,
            actor_id="user-001",
            body_text=body,
        )
        data.update(overrides)
        return DispatchRequest(**data)
    return _req
