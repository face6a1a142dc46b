# =============================================================================
# Progress Event Bus — Throttled, Ordered, Per-Job Delivery
# =============================================================================
#
# Turns the internal EngagementEvent stream of a run into the client-facing
# ProgressEvent stream and delivers it per job.
#
# PIPELINE:
#   worker emits EngagementEvent
#     └─▶ to_progress_event()           (total mapping, models/events.py)
#          └─▶ StatusDebouncer          (pure state machine, no clocks)
#               └─▶ ThrottledProgressEmitter (asyncio driver: timer +
#                    single ordered sender)
#                    └─▶ ProgressPublisher
#                         ├── RedisProgressPublisher  research:progress:{job_id}
#                         └── LocalProgressBus        in-process fan-out
#
# DEBOUNCE STATE MACHINE:
#
#   IDLE ──status_update, window open──────────▶ IDLE     (send now)
#   IDLE ──status_update, inside window────────▶ PENDING(event, deadline)
#   PENDING ──status_update───────────────────▶ PENDING(latest, same deadline)
#   PENDING ──timer, now >= deadline──────────▶ IDLE     (send pending)
#   any ──important event─────────────────────▶ IDLE     (send pending first,
#                                                          then the event)
#
# Important = every type except status_update. They are never delayed or
# dropped, and a pending status_update is always flushed before one.
# =============================================================================

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from thesis_validator.config import settings
from thesis_validator.models.events import (
    EngagementEvent,
    ProgressEvent,
    ProgressEventType,
    to_progress_event,
)
from thesis_validator.models.jobs import JobStatus, ResearchJob

logger = logging.getLogger(__name__)

TERMINAL_TYPES = frozenset({ProgressEventType.COMPLETED, ProgressEventType.ERROR})


def progress_channel(job_id: str) -> str:
    return f"{settings.progress_channel_prefix}:{job_id}"


# ---------------------------------------------------------------------------
# Debounce State Machine (pure)
# ---------------------------------------------------------------------------


class DebounceState(str, enum.Enum):
    IDLE = "idle"
    PENDING = "pending"


@dataclass
class DebounceDecision:
    """
    What the driver must do after a transition.

    Attributes:
        send: Events to publish now, in order.
        schedule_at: Clock time at which to call `on_timer`, if any.
        cancel_timer: Whether a previously scheduled timer is now stale.
    """

    send: list[ProgressEvent] = field(default_factory=list)
    schedule_at: float | None = None
    cancel_timer: bool = False


class StatusDebouncer:
    """
    Coalesces status_update events inside a throttle window.

    Time is passed in by the caller (`now`, seconds), so every transition
    can be tested without clocks or timers.
    """

    def __init__(self, window_seconds: float) -> None:
        self.window = window_seconds
        self.state = DebounceState.IDLE
        self.pending: ProgressEvent | None = None
        self.deadline: float | None = None
        self.last_sent_at: float | None = None

    def on_event(self, event: ProgressEvent, now: float) -> DebounceDecision:
        if event.type.is_important:
            decision = DebounceDecision(cancel_timer=self.state is DebounceState.PENDING)
            if self.pending is not None:
                decision.send.append(self.pending)
            self._reset()
            decision.send.append(event)
            self.last_sent_at = now
            return decision

        if self.state is DebounceState.PENDING:
            self.pending = event
            return DebounceDecision()

        if self.last_sent_at is None or now - self.last_sent_at >= self.window:
            self.last_sent_at = now
            return DebounceDecision(send=[event])

        self.state = DebounceState.PENDING
        self.pending = event
        self.deadline = self.last_sent_at + self.window
        return DebounceDecision(schedule_at=self.deadline)

    def on_timer(self, now: float) -> DebounceDecision:
        if self.state is DebounceState.IDLE or self.pending is None:
            return DebounceDecision()
        if self.deadline is not None and now < self.deadline:
            return DebounceDecision(schedule_at=self.deadline)

        event = self.pending
        self._reset()
        self.last_sent_at = now
        return DebounceDecision(send=[event])

    def flush(self, now: float) -> DebounceDecision:
        """Release any pending event immediately (used on shutdown)."""
        if self.pending is None:
            return DebounceDecision()
        event = self.pending
        self._reset()
        self.last_sent_at = now
        return DebounceDecision(send=[event], cancel_timer=True)

    def _reset(self) -> None:
        self.state = DebounceState.IDLE
        self.pending = None
        self.deadline = None


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------


class ProgressPublisher(Protocol):
    async def publish(self, event: ProgressEvent) -> None: ...


class RedisProgressPublisher:
    """Publishes JSON events on `research:progress:{job_id}`."""

    def __init__(self, redis) -> None:
        self._redis = redis

    async def publish(self, event: ProgressEvent) -> None:
        await self._redis.publish(progress_channel(event.job_id), event.model_dump_json())


class LocalProgressBus:
    """In-process fan-out to any number of subscribers per job."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[ProgressEvent]]] = defaultdict(set)
        self.history: dict[str, list[ProgressEvent]] = defaultdict(list)

    async def publish(self, event: ProgressEvent) -> None:
        self.history[event.job_id].append(event)
        for queue in list(self._subscribers.get(event.job_id, ())):
            queue.put_nowait(event)

    async def subscribe(self, job_id: str) -> AsyncIterator[ProgressEvent]:
        """Yield events for `job_id` until a terminal event arrives."""
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._subscribers[job_id].add(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type in TERMINAL_TYPES:
                    return
        finally:
            self._subscribers[job_id].discard(queue)


def job_status_event(job: ResearchJob) -> ProgressEvent:
    """Current state of a job record as a ProgressEvent (terminal for finished jobs)."""
    if job.status == JobStatus.COMPLETED:
        return ProgressEvent(
            type=ProgressEventType.COMPLETED,
            job_id=job.id,
            data={
                "status": job.status.value,
                "progress": 100,
                "confidence_score": job.confidence_score,
            },
        )
    if job.status == JobStatus.FAILED:
        return ProgressEvent(
            type=ProgressEventType.ERROR,
            job_id=job.id,
            data={"status": job.status.value, "error": job.error_message, "progress": job.progress},
        )
    return ProgressEvent(
        type=ProgressEventType.STATUS_UPDATE,
        job_id=job.id,
        data={"status": job.status.value, "progress": job.progress},
    )


async def subscribe_progress(
    redis,
    job_id: str,
    snapshot: Callable[[], Awaitable[ProgressEvent | None]] | None = None,
) -> AsyncIterator[ProgressEvent]:
    """
    Yield events from the Redis channel of `job_id` until a terminal event.

    `snapshot` is awaited once the channel is subscribed and its event is
    yielded first, so a job that finished before the subscription still
    ends the stream.
    """
    channel = progress_channel(job_id)
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    try:
        if snapshot is not None:
            current = await snapshot()
            if current is not None:
                yield current
                if current.type in TERMINAL_TYPES:
                    return
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            event = ProgressEvent.model_validate_json(message["data"])
            yield event
            if event.type in TERMINAL_TYPES:
                return
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()


def create_redis(url: str | None = None):
    """New async Redis client (one per worker job / per API process)."""
    import redis.asyncio as aioredis

    return aioredis.from_url(url or settings.redis_url, decode_responses=True)


# ---------------------------------------------------------------------------
# Throttled Emitter (asyncio driver)
# ---------------------------------------------------------------------------

_STOP = object()


class ThrottledProgressEmitter:
    """
    Callable event sink for one job.

    Pass an instance as the `emit` callback of a run. Events are mapped,
    debounced and handed to a single sender task, which publishes them in
    order. Call `aclose()` when the run ends to flush and drain.
    """

    def __init__(
        self,
        job_id: str,
        publisher: ProgressPublisher,
        window_ms: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_id = job_id
        self._publisher = publisher
        self._clock = clock
        self._debouncer = StatusDebouncer(
            (settings.event_throttle_ms if window_ms is None else window_ms) / 1000
        )
        self._queue: asyncio.Queue = asyncio.Queue()
        self._timer: asyncio.TimerHandle | None = None
        self._sender: asyncio.Task | None = None
        self.progress = 0
        self.published = 0

    def __call__(self, event: EngagementEvent) -> None:
        self.handle(to_progress_event(event, self.job_id))

    def handle(self, event: ProgressEvent) -> None:
        self._ensure_sender()
        self._track_progress(event)
        self._apply(self._debouncer.on_event(event, self._clock()))

    async def aclose(self) -> None:
        self._ensure_sender()
        self._apply(self._debouncer.flush(self._clock()))
        self._cancel_timer()
        self._queue.put_nowait(_STOP)
        if self._sender is not None:
            await self._sender

    # -----------------------------------------------------------------------

    def _ensure_sender(self) -> None:
        if self._sender is None:
            self._sender = asyncio.get_running_loop().create_task(self._drain())

    def _apply(self, decision: DebounceDecision) -> None:
        if decision.cancel_timer:
            self._cancel_timer()
        for event in decision.send:
            self._queue.put_nowait(event)
        if decision.schedule_at is not None:
            self._cancel_timer()
            delay = max(0.0, decision.schedule_at - self._clock())
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._apply(self._debouncer.on_timer(self._clock()))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _track_progress(self, event: ProgressEvent) -> None:
        value = event.data.get("progress")
        if isinstance(value, (int, float)) and value > self.progress:
            self.progress = min(int(value), 100)

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            try:
                await self._publisher.publish(item)
                self.published += 1
            except Exception as exc:
                logger.warning(
                    "Progress publish failed for job %s (%s): %s",
                    self.job_id, item.type.value, exc,
                )
