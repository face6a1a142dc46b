# =============================================================================
# Worker Contract — Shared Context, Registry Keys, Single-Writer Locks
# =============================================================================
#
# Every specialised worker implements one coroutine:
#
#     async def execute(self, request, context: WorkerContext) -> result
#
# and is registered with the conductor under a WorkerId. The conductor
# receives a complete Mapping[WorkerId, Worker] at construction; there is
# no lookup by string name at run time.
#
# WorkerContext carries everything a worker may touch during one run:
#   engagement_id   — owning engagement
#   memory          — primary store (DealMemory)
#   repositories    — relational ports + best-effort SecondaryWriter
#   llm / capabilities — LLM provider, embedder, search/financial/document
#   emit            — sink for EngagementEvents (sync callable)
#   cancel_event    — cooperative cancellation signal
#   locks           — per-hypothesis single-writer locks
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from thesis_validator.config import Settings, settings
from thesis_validator.errors import WorkflowCancelledError
from thesis_validator.models.events import EngagementEvent, EngagementEventType
from thesis_validator.services.capabilities import SourceCapabilities
from thesis_validator.services.deal_memory import DealMemory
from thesis_validator.services.llm import LLMProvider
from thesis_validator.services.repositories import Repositories

logger = logging.getLogger(__name__)


class WorkerId(str, enum.Enum):
    HYPOTHESIS_BUILDER = "hypothesis_builder"
    COMPARABLES_FINDER = "comparables_finder"
    EVIDENCE_GATHERER = "evidence_gatherer"
    CONTRADICTION_HUNTER = "contradiction_hunter"
    SYNTHESIZER = "synthesizer"


class Worker(Protocol):
    async def execute(self, request: Any, context: WorkerContext) -> Any: ...


class KeyedLocks:
    """One asyncio.Lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock


@dataclass
class WorkerContext:
    engagement_id: str
    memory: DealMemory
    repositories: Repositories
    llm: LLMProvider
    capabilities: SourceCapabilities
    emit: Callable[[EngagementEvent], None] = lambda event: None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    locks: KeyedLocks = field(default_factory=KeyedLocks)
    settings: Settings = field(default_factory=lambda: settings)
    llm_semaphore: asyncio.Semaphore | None = None

    def __post_init__(self) -> None:
        if self.llm_semaphore is None:
            self.llm_semaphore = asyncio.Semaphore(self.settings.llm_concurrency)

    def emit_event(
        self,
        event_type: EngagementEventType,
        data: dict[str, Any] | None = None,
        agent: WorkerId | str | None = None,
    ) -> None:
        """Build and emit an EngagementEvent. Sink failures are logged only."""
        event = EngagementEvent(
            type=event_type,
            engagement_id=self.engagement_id,
            data=data or {},
            agent=agent.value if isinstance(agent, WorkerId) else agent,
        )
        try:
            self.emit(event)
        except Exception:
            logger.exception("Event sink failed for %s", event_type.value)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self, where: str) -> None:
        if self.cancel_event.is_set():
            raise WorkflowCancelledError(f"Run cancelled before {where}", phase=where)
