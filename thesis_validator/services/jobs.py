# =============================================================================
# Job Service — Submission, Lookup & Cancellation
# =============================================================================
#
# SUBMISSION (research or stress test):
#   1. Validate input (thesis length, config schema)    → ValidationError
#   2. Engagement must exist                            → NotFoundError
#   3. Sliding-window submission limit per engagement   → RateLimitExceededError
#   4. Create the job atomically; a second active job   → ConflictError
#      for the same engagement creates nothing             (existing_job_id)
#   5. Hand the job id to the dispatcher (Celery); if the broker refuses
#      it the job is failed ("Dispatch failed: ...")  → QueueUnavailableError
#
# One active job per engagement, across job types: a stress test cannot
# start while research is still writing hypotheses, and vice versa.
#
# CANCELLATION:
#   pending  → failed immediately ("Cancelled by user")
#   running  → sets research:cancel:{job_id} in Redis; the worker's
#              heartbeat turns the flag into the run's cancel signal
#   terminal → InvalidTransitionError
# =============================================================================

from __future__ import annotations

import logging
from typing import Any, Protocol

from thesis_validator.config import settings
from thesis_validator.errors import (
    InvalidTransitionError,
    NotFoundError,
    QueueUnavailableError,
    ValidationError,
)
from thesis_validator.models.jobs import (
    JobStatus,
    JobType,
    ResearchConfig,
    ResearchJob,
    StressTestConfig,
)
from thesis_validator.services.rate_limiter import SubmissionRateLimiter
from thesis_validator.services.repositories import EngagementRepository, JobRepository

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


def cancel_key(job_id: str) -> str:
    return f"research:cancel:{job_id}"


class JobDispatcher(Protocol):
    def dispatch(self, job: ResearchJob) -> None: ...


class CeleryDispatcher:
    """Enqueues the Celery task matching the job type."""

    def dispatch(self, job: ResearchJob) -> None:
        from thesis_validator.workers.tasks import run_research_job, run_stress_test_job

        task = run_stress_test_job if job.job_type == JobType.STRESS_TEST else run_research_job
        result = task.delay(job.id)
        logger.info("Dispatched %s job %s as task %s", job.job_type.value, job.id, result.id)


class JobService:
    def __init__(
        self,
        jobs: JobRepository,
        engagements: EngagementRepository,
        rate_limiter: SubmissionRateLimiter | None = None,
        dispatcher: JobDispatcher | None = None,
        redis=None,
    ) -> None:
        self.jobs = jobs
        self.engagements = engagements
        self.rate_limiter = rate_limiter or SubmissionRateLimiter()
        self.dispatcher = dispatcher or CeleryDispatcher()
        self._redis = redis

    # -----------------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------------

    async def submit_research(
        self,
        engagement_id: str,
        thesis: str,
        config: ResearchConfig | dict[str, Any] | None = None,
        expert_transcripts: list[dict[str, Any]] | None = None,
    ) -> ResearchJob:
        """
        Create and enqueue a research job.

        `expert_transcripts` (dicts with content, expert_name, call_id and
        hypothesis_ids) are stored on the job and ingested during synthesis.

        Raises:
            ValidationError, NotFoundError, RateLimitExceededError,
            ConflictError, QueueUnavailableError
        """
        text = (thesis or "").strip()
        if not settings.min_thesis_length <= len(text) <= settings.max_thesis_length:
            raise ValidationError(
                f"Thesis must be between {settings.min_thesis_length} and "
                f"{settings.max_thesis_length} characters"
            )
        research_config = _validated(ResearchConfig, config)
        job_config: dict[str, Any] = {
            "thesis": text,
            "research": research_config.model_dump(mode="json"),
        }
        if expert_transcripts:
            if any(not str(t.get("content") or "").strip() for t in expert_transcripts):
                raise ValidationError("Expert transcripts must have content")
            job_config["expert_transcripts"] = [dict(t) for t in expert_transcripts]

        job = ResearchJob(engagement_id=engagement_id, job_type=JobType.RESEARCH, config=job_config)
        return await self._submit(job)

    async def submit_stress_test(
        self,
        engagement_id: str,
        hypothesis_ids: list[str] | None = None,
        config: StressTestConfig | dict[str, Any] | None = None,
    ) -> ResearchJob:
        stress_config = _validated(StressTestConfig, config)
        job = ResearchJob(
            engagement_id=engagement_id,
            job_type=JobType.STRESS_TEST,
            config={
                "hypothesis_ids": list(hypothesis_ids) if hypothesis_ids else None,
                "stress_test": stress_config.model_dump(mode="json"),
            },
        )
        return await self._submit(job)

    async def _submit(self, job: ResearchJob) -> ResearchJob:
        engagement = await self.engagements.get_by_id(job.engagement_id)
        if engagement is None:
            raise NotFoundError(f"Engagement {job.engagement_id} not found")

        await self.rate_limiter.check(job.engagement_id)
        created = await self.jobs.create_exclusive(job)
        logger.info(
            "Created %s job %s for engagement %s",
            created.job_type.value, created.id, created.engagement_id,
        )
        try:
            self.dispatcher.dispatch(created)
        except Exception as exc:
            logger.exception("Could not dispatch job %s", created.id)
            message = f"Dispatch failed: {exc}"
            failed = created.transitioned(JobStatus.FAILED, error_message=message[:1000])
            await self.jobs.update(failed, expected_status=JobStatus.PENDING)
            raise QueueUnavailableError(created.id, message) from exc
        return created

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    async def get_job(self, job_id: str) -> ResearchJob:
        job = await self.jobs.get_by_id(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(self, engagement_id: str) -> list[ResearchJob]:
        return await self.jobs.get_by_engagement(engagement_id)

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    async def cancel_job(self, job_id: str) -> ResearchJob:
        """
        Raises:
            NotFoundError: Unknown job.
            InvalidTransitionError: Job already completed or failed.
        """
        job = await self.get_job(job_id)
        if job.status.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")

        if job.status == JobStatus.PENDING:
            try:
                failed = job.transitioned(JobStatus.FAILED, error_message=CANCELLED_MESSAGE)
                return await self.jobs.update(failed, expected_status=JobStatus.PENDING)
            except InvalidTransitionError:
                # A worker picked it up in between; fall through to the flag.
                job = await self.get_job(job_id)
                if job.status.is_terminal:
                    raise

        r = self._redis or _get_redis()
        await r.set(cancel_key(job_id), "1", ex=settings.job_soft_time_limit)
        logger.info("Cancellation requested for running job %s", job_id)
        return job


_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis

        _redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


def _validated(model, config):
    if config is None:
        return model()
    if isinstance(config, model):
        return config
    try:
        return model.model_validate(config)
    except Exception as exc:
        raise ValidationError(f"Invalid {model.__name__}: {exc}") from exc
