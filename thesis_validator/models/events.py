# =============================================================================
# Domain Models — Engagement Events & Progress Events
# =============================================================================
#
# Two vocabularies:
#
#   EngagementEvent  — emitted by workers and the conductor while a run
#                      executes (fine-grained, internal).
#   ProgressEvent    — the closed, client-facing vocabulary published on the
#                      per-job progress stream.
#
# `to_progress_event` maps every internal type to exactly one progress type.
# Every progress type except STATUS_UPDATE is "important": it is delivered
# immediately and in order. STATUS_UPDATE is debounced (see
# services/progress.py).
# =============================================================================

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


class EngagementEventType(str, enum.Enum):
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    PHASE_STARTED = "phase.started"
    PHASE_COMPLETED = "phase.completed"
    AGENT_STATUS = "agent.status"
    RESEARCH_PROGRESS = "research.progress"
    HYPOTHESIS_CREATED = "hypothesis.created"
    HYPOTHESIS_UPDATED = "hypothesis.updated"
    EVIDENCE_NEW = "evidence.new"
    CONTRADICTION_FOUND = "contradiction.found"


class EngagementEvent(BaseModel):
    """Internal lifecycle event raised during a run."""

    type: EngagementEventType
    engagement_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    agent: str | None = None
    timestamp: datetime = Field(default_factory=_now)


class ProgressEventType(str, enum.Enum):
    STATUS_UPDATE = "status_update"
    PHASE_START = "phase_start"
    PHASE_COMPLETE = "phase_complete"
    HYPOTHESIS_GENERATED = "hypothesis_generated"
    EVIDENCE_FOUND = "evidence_found"
    CONTRADICTION_DETECTED = "contradiction_detected"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_important(self) -> bool:
        return self is not ProgressEventType.STATUS_UPDATE


class ProgressEvent(BaseModel):
    """Client-facing event published on `research:progress:{job_id}`."""

    type: ProgressEventType
    job_id: str
    timestamp: datetime = Field(default_factory=_now)
    data: dict[str, Any] = Field(default_factory=dict)


_EVENT_MAP: dict[EngagementEventType, ProgressEventType] = {
    EngagementEventType.WORKFLOW_STARTED: ProgressEventType.STATUS_UPDATE,
    EngagementEventType.WORKFLOW_COMPLETED: ProgressEventType.COMPLETED,
    EngagementEventType.WORKFLOW_FAILED: ProgressEventType.ERROR,
    EngagementEventType.PHASE_STARTED: ProgressEventType.PHASE_START,
    EngagementEventType.PHASE_COMPLETED: ProgressEventType.PHASE_COMPLETE,
    EngagementEventType.AGENT_STATUS: ProgressEventType.STATUS_UPDATE,
    EngagementEventType.RESEARCH_PROGRESS: ProgressEventType.STATUS_UPDATE,
    EngagementEventType.HYPOTHESIS_CREATED: ProgressEventType.HYPOTHESIS_GENERATED,
    EngagementEventType.HYPOTHESIS_UPDATED: ProgressEventType.STATUS_UPDATE,
    EngagementEventType.EVIDENCE_NEW: ProgressEventType.EVIDENCE_FOUND,
    EngagementEventType.CONTRADICTION_FOUND: ProgressEventType.CONTRADICTION_DETECTED,
}


def to_progress_event(event: EngagementEvent, job_id: str) -> ProgressEvent:
    """Translate an internal event into the progress vocabulary."""
    data = dict(event.data)
    data.setdefault("event", event.type.value)
    if event.agent:
        data.setdefault("agent", event.agent)
    return ProgressEvent(
        type=_EVENT_MAP[event.type],
        job_id=job_id,
        timestamp=event.timestamp,
        data=data,
    )
