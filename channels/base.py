"""
Provider Send Adapter — The seam between the dispatcher and a messaging provider.

Provides:
- ProviderResponse: provider message id + raw response body
- ProviderMetrics: per-provider send/fail/latency tracking
- ProviderSendAdapter: abstract base; subclasses implement _do_send and
  raise on failure (ProviderSendFailed or anything else, the orchestrator
  converts both into a failed Message)
"""
from __future__ import annotations

import abc
import time
import structlog
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from models.schemas import Destination

logger = structlog.get_logger()


@dataclass
class ProviderResponse:
    provider_message_id: str
    raw_response: dict[str, Any] = field(default_factory=dict)


# ══════════════════════════════════════════════════════════════
#  PROVIDER METRICS
# ══════════════════════════════════════════════════════════════

class ProviderMetrics:
    """Tracks per-provider send, failure, and latency metrics."""

    MAX_LATENCIES = 1000
    MAX_ERRORS = 100

    def __init__(self, provider: str):
        self.provider = provider
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: deque[float] = deque(maxlen=self.MAX_LATENCIES)
        self._errors: deque[str] = deque(maxlen=self.MAX_ERRORS)

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": list(self._errors)[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  PROVIDER SEND ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ProviderSendAdapter(abc.ABC):
    """
    Base class for all provider adapters.

    ``send`` wraps the subclass's ``_do_send`` with latency and failure
    metrics. It never retries at this level and never swallows errors.
    """

    name: str = "provider"

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self.metrics = ProviderMetrics(self.name)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, destination: Destination, body: str) -> ProviderResponse:
        ...

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config or {})
        self._initialized = True

    # ── Public send ───────────────────────────────────────────

    async def send(self, destination: Destination, body: str) -> ProviderResponse:
        start = time.monotonic()
        try:
            response = await self._do_send(destination, body)
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise
        latency = (time.monotonic() - start) * 1000
        self.metrics.record_send(latency)
        logger.debug("provider_send_ok",
                     provider=self.name,
                     provider_message_id=response.provider_message_id,
                     latency_ms=round(latency, 1))
        return response

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "provider": self.name,
            "initialized": self._initialized,
            "metrics": self.metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass
