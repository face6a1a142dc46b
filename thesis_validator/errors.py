# =============================================================================
# Error Hierarchy — Research Workflow Engine
# =============================================================================
#
# Every error the engine raises on purpose derives from ThesisValidatorError.
#
#   ThesisValidatorError
#   ├── ValidationError          — bad thesis / config, surfaced immediately
#   ├── NotFoundError            — unknown engagement, job or hypothesis
#   ├── ConflictError            — engagement already has an active job
#   ├── RateLimitExceededError   — submission window exhausted
#   ├── InvalidTransitionError   — job status moved backwards
#   ├── QueueUnavailableError    — job could not be handed to the worker pool
#   ├── ExternalSourceError      — one source failed or timed out (recovered)
#   ├── PersistenceError         — secondary store write failed (recovered)
#   └── WorkflowError            — a phase failed, run aborted
#       └── WorkflowCancelledError
#
# The API layer maps these to HTTP 422/404/409/429/409/503. The Celery
# task maps WorkflowError to an immediate job failure and everything else
# to a retry.
# =============================================================================

from __future__ import annotations


class ThesisValidatorError(Exception):
    """Base class for all engine errors."""


class ValidationError(ThesisValidatorError):
    """Input failed validation before any work was scheduled."""


class NotFoundError(ThesisValidatorError):
    """A referenced entity does not exist."""


class ConflictError(ThesisValidatorError):
    """
    An active job already exists for the engagement.

    Attributes:
        existing_job_id: Id of the pending or running job that blocks
            the new submission.
    """

    def __init__(self, existing_job_id: str, message: str | None = None) -> None:
        self.existing_job_id = existing_job_id
        super().__init__(
            message
            or f"A research job is already active for this engagement: {existing_job_id}"
        )


class RateLimitExceededError(ThesisValidatorError):
    """Submission rate limit exhausted for the current window."""

    def __init__(self, limit: int, retry_after: int) -> None:
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded. Limit: {limit} submissions per {retry_after}s."
        )


class InvalidTransitionError(ThesisValidatorError):
    """A job status transition would move backwards or out of a terminal state."""


class QueueUnavailableError(ThesisValidatorError):
    """
    The broker rejected the job. The job record was already moved to FAILED.

    Attributes:
        job_id: Id of the failed job record.
    """

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(message)


class ExternalSourceError(ThesisValidatorError):
    """A search/financial/document/embedding source failed or timed out."""

    def __init__(self, source: str, message: str) -> None:
        self.source = source
        super().__init__(f"{source}: {message}")


class PersistenceError(ThesisValidatorError):
    """A write to the secondary relational store failed."""


class WorkflowError(ThesisValidatorError):
    """
    A workflow phase failed and the remaining phases were not run.

    Attributes:
        phase: Phase that raised (e.g. "contradiction_analysis").
        counts: Partial counts reached before the failure
            (hypotheses, evidence, contradictions).
    """

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        counts: dict[str, int] | None = None,
    ) -> None:
        self.phase = phase
        self.counts = dict(counts or {})
        super().__init__(message)


class WorkflowCancelledError(WorkflowError):
    """The run observed the cooperative cancellation signal."""
