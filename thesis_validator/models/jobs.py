# =============================================================================
# Domain Models — Engagements, Job Configuration & Job Records
# =============================================================================
#
# JOB STATE MACHINE (forward only):
#
#   PENDING ──▶ RUNNING ──▶ COMPLETED
#      │           └──────▶ FAILED
#      └──────────────────▶ FAILED   (cancelled before a worker picked it up)
#
# A job record stays queryable after failure: status, progress, the last
# error message and the partial counts reached are all kept.
# =============================================================================

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from thesis_validator.errors import InvalidTransitionError


def _now() -> datetime:
    return datetime.now(UTC)


class Engagement(BaseModel):
    """Deal engagement a thesis is being diligenced for (read-only here)."""

    id: str
    target_company_name: str
    sector: str | None = None
    thesis_summary: str | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ContradictionIntensity(str, enum.Enum):
    LIGHT = "light"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"

    @property
    def query_count(self) -> int:
        return {"light": 3, "moderate": 5, "aggressive": 8}[self.value]

    @property
    def results_per_query(self) -> int:
        return {"light": 3, "moderate": 5, "aggressive": 10}[self.value]


SearchDepth = Literal["quick", "standard", "thorough"]

_DEPTH_INTENSITY: dict[str, ContradictionIntensity] = {
    "quick": ContradictionIntensity.LIGHT,
    "standard": ContradictionIntensity.MODERATE,
    "thorough": ContradictionIntensity.AGGRESSIVE,
}


class ResearchConfig(BaseModel):
    """Options accepted by a research job."""

    max_hypotheses: int = Field(default=5, ge=1, le=10)
    search_depth: SearchDepth = "standard"
    enable_comparables: bool = True
    enable_contradictions: bool = True
    contradiction_intensity: ContradictionIntensity | None = None
    max_evidence_per_hypothesis: int = Field(default=20, ge=1, le=100)
    min_credibility: float = Field(default=0.3, ge=0.0, le=1.0)
    sources: list[str] = Field(
        default_factory=lambda: ["web", "documents", "market_intel", "financial"]
    )
    symbols: list[str] = Field(default_factory=list)
    confidence_threshold: float = Field(default=70.0, ge=0.0, le=100.0)

    @property
    def intensity(self) -> ContradictionIntensity:
        return self.contradiction_intensity or _DEPTH_INTENSITY[self.search_depth]


class StressTestConfig(BaseModel):
    """Options accepted by a stress-test job."""

    intensity: ContradictionIntensity = ContradictionIntensity.AGGRESSIVE
    focus_on_high_confidence: bool = False
    include_assumptions: bool = True
    max_contradictions_per_hypothesis: int = Field(default=10, ge=1, le=50)


# ---------------------------------------------------------------------------
# Job Record
# ---------------------------------------------------------------------------


class JobType(str, enum.Enum):
    RESEARCH = "research"
    STRESS_TEST = "stress_test"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class ResearchJob(BaseModel):
    """Durable record of one research or stress-test run."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    engagement_id: str
    job_type: JobType = JobType.RESEARCH
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    config: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] | None = None
    confidence_score: float | None = Field(default=None, ge=0.0, le=100.0)
    error_message: str | None = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_now)

    def transitioned(self, target: JobStatus, **changes: Any) -> ResearchJob:
        """
        Return a copy moved to `target`.

        Raises:
            InvalidTransitionError: If `target` is not reachable from the
                current status.
        """
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Job {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        now = _now()
        update: dict[str, Any] = {"status": target, "updated_at": now, **changes}
        if target == JobStatus.RUNNING:
            update.setdefault("started_at", now)
        if target.is_terminal:
            update.setdefault("completed_at", now)
            if target == JobStatus.COMPLETED:
                update.setdefault("progress", 100)
        return self.model_copy(update=update)
