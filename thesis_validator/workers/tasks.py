# =============================================================================
# Celery Task Definitions — Research & Stress-Test Jobs
# =============================================================================
#
# Each task receives a job id, loads the job record and runs the matching
# workflow inside its own event loop (`asyncio.run`).
#
# JOB EXECUTION:
#   1. Skip jobs that are already terminal (cancelled while queued, or a
#      redelivery of a finished job)
#   2. Take the job's Redis lease lock (another holder → skip)
#   3. Mark the job RUNNING (idempotent on retry / redelivery)
#   4. Start the heartbeat: every lease/3 seconds it renews the lease,
#      persists progress and polls research:cancel:{job_id}
#   5. Run the workflow with a ThrottledProgressEmitter as its event sink
#   6. Mark the job COMPLETED with results and confidence_score
#   7. Release the lease, replay parked secondary writes, dispose the pool
#
# RETRY STRATEGY:
#   WorkflowError (phase failure, cancellation)  → FAILED immediately
#     unless the phase failed on an infrastructure error
#   Other ThesisValidatorError                   → FAILED immediately
#   Infrastructure errors (timeouts, connection loss, soft time limit,
#     unexpected exceptions)                     → retry, backoff
#                                                  60s, 120s, 240s
#   Retries exhausted                            → FAILED with last error
#
# The ceiling counts stored attempts, so a task redelivered after a worker
# crash (same Celery retry count) still runs out. A soft time limit that
# escapes the event loop is settled by abandon_attempt; RUNNING jobs whose
# lease expired (hard time limit, lost worker) are failed by the periodic
# reap_stale_jobs task.
#
# A failed job keeps its progress, last error and the partial counts
# (results.partial_counts) for inspection.
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from celery.exceptions import SoftTimeLimitExceeded
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError

from thesis_validator.agents.synthesizer import ExpertTranscript
from thesis_validator.config import settings
from thesis_validator.db.engine import dispose_engine
from thesis_validator.errors import (
    InvalidTransitionError,
    NotFoundError,
    ThesisValidatorError,
    WorkflowCancelledError,
    WorkflowError,
)
from thesis_validator.models.events import ProgressEvent, ProgressEventType
from thesis_validator.models.jobs import (
    JobStatus,
    JobType,
    ResearchConfig,
    ResearchJob,
    StressTestConfig,
)
from thesis_validator.services.jobs import CANCELLED_MESSAGE, cancel_key
from thesis_validator.services.progress import (
    ProgressPublisher,
    RedisProgressPublisher,
    ThrottledProgressEmitter,
    create_redis,
)
from thesis_validator.services.repositories import Repositories, get_sql_repositories
from thesis_validator.workers.celery_app import celery_app
from thesis_validator.workflows.research import execute_research_workflow
from thesis_validator.workflows.stress_test import execute_stress_test_workflow

logger = logging.getLogger(__name__)

INFRASTRUCTURE_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    RedisConnectionError,
    RedisTimeoutError,
    OperationalError,
    InterfaceError,
    SoftTimeLimitExceeded,
)


# ---------------------------------------------------------------------------
# Outcome & Retry Policy
# ---------------------------------------------------------------------------


@dataclass
class JobOutcome:
    """What one execution attempt ended with."""

    status: str  # "completed" | "failed" | "retry" | "skipped"
    job_id: str
    error: BaseException | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "error": str(self.error) if self.error else None,
        }


def is_retryable(exc: BaseException) -> bool:
    """Infrastructure failures retry; domain and workflow failures do not."""
    if isinstance(exc, WorkflowError):
        cause = exc.__cause__
        return cause is not None and isinstance(cause, INFRASTRUCTURE_ERRORS)
    if isinstance(exc, ThesisValidatorError):
        return False
    return True


def retry_countdown(retries: int) -> int:
    """60s, 120s, 240s, ... for the 1st, 2nd, 3rd retry."""
    return settings.job_retry_backoff_seconds * (2 ** retries)


def lease_key(job_id: str) -> str:
    return f"research:lease:{job_id}"


# ---------------------------------------------------------------------------
# Job Execution (async)
# ---------------------------------------------------------------------------


async def execute_job(
    job_id: str,
    attempt: int = 0,
    max_retries: int | None = None,
    *,
    repositories: Repositories | None = None,
    redis=None,
    publisher: ProgressPublisher | None = None,
    workflow_overrides: dict[str, Any] | None = None,
) -> JobOutcome:
    """
    Run one attempt of a job.

    Args:
        attempt: Zero-based retry count (Celery `request.retries`).
        max_retries: Retries allowed in total; defaults to job_max_retries.
        workflow_overrides: Extra collaborators forwarded to the workflow
            (memory, llm, capabilities).

    Returns:
        JobOutcome. status "retry" means the caller should reschedule.
    """
    max_retries = settings.job_max_retries if max_retries is None else max_retries
    repos = repositories or get_sql_repositories()
    r = redis or create_redis()
    publisher = publisher or RedisProgressPublisher(r)

    try:
        job = await repos.jobs.get_by_id(job_id)
        if job is None:
            logger.error("Job %s not found, dropping task", job_id)
            return JobOutcome("skipped", job_id)
        if job.status.is_terminal:
            logger.info("Job %s is already %s, nothing to do", job_id, job.status.value)
            return JobOutcome("skipped", job_id)

        lock = r.lock(lease_key(job_id), timeout=settings.job_lease_seconds)
        if not await lock.acquire(blocking=False, token=uuid.uuid4().hex):
            logger.warning("Job %s is leased by another worker, skipping", job_id)
            return JobOutcome("skipped", job_id)

        try:
            return await _run_leased(
                job, attempt, max_retries, repos, r, lock, publisher, workflow_overrides or {}
            )
        finally:
            with contextlib.suppress(LockError):
                await lock.release()
            await repos.secondary.replay()
    finally:
        if redis is None:
            await r.aclose()
        if repositories is None:
            await dispose_engine()


async def _run_leased(
    job: ResearchJob,
    attempt: int,
    max_retries: int,
    repos: Repositories,
    r,
    lock,
    publisher: ProgressPublisher,
    overrides: dict[str, Any],
) -> JobOutcome:
    if await r.get(cancel_key(job.id)):
        await _fail(repos, job.id, CANCELLED_MESSAGE, publisher)
        return JobOutcome("failed", job.id)

    # Redelivery after a worker crash keeps Celery's retry count, so the
    # ceiling is enforced on the stored attempt count.
    attempts = max(job.attempts, attempt) + 1
    if job.status == JobStatus.RUNNING and job.attempts > attempt:
        logger.warning("Job %s: attempt %d was interrupted (worker lost)", job.id, job.attempts)
        recorded = await _record_error(
            repos, job.id, f"Attempt {job.attempts} interrupted: worker lost"
        )
        job = recorded or job
    if attempts > max_retries + 1:
        message = f"Gave up after {job.attempts} attempts. Last error: {job.error_message or 'unknown'}"
        await _fail(repos, job.id, message, publisher)
        return JobOutcome("failed", job.id)

    job = await _mark_running(repos, job, attempts)
    emitter = ThrottledProgressEmitter(job.id, publisher)
    cancel_event = asyncio.Event()
    heartbeat = asyncio.create_task(_heartbeat(job, repos, r, lock, emitter, cancel_event))

    try:
        try:
            results, score = await _run_workflow(job, repos, emitter, cancel_event, overrides)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            await emitter.aclose()

        latest = await repos.jobs.get_by_id(job.id) or job
        completed = latest.transitioned(
            JobStatus.COMPLETED, results=results, confidence_score=score, error_message=None
        )
        await repos.jobs.update(completed, expected_status=JobStatus.RUNNING)
        logger.info("Job %s completed (confidence_score=%s)", job.id, score)
        return JobOutcome("completed", job.id)

    except Exception as exc:
        if is_retryable(exc) and job.attempts <= max_retries:
            logger.warning(
                "Job %s attempt %d/%d failed, will retry in %ds: %s",
                job.id, job.attempts, max_retries + 1, retry_countdown(attempt), exc,
            )
            await _record_error(repos, job.id, f"Attempt {job.attempts} failed: {exc}")
            return JobOutcome("retry", job.id, exc)

        counts = exc.counts if isinstance(exc, WorkflowError) else {}
        phase = exc.phase if isinstance(exc, WorkflowError) else None
        # The workflow already published its own error event.
        announce = not isinstance(exc, WorkflowError)
        if announce:
            logger.exception("Job %s failed", job.id)
        if isinstance(exc, WorkflowCancelledError):
            message = CANCELLED_MESSAGE
        else:
            message = str(exc) or type(exc).__name__
        await _fail(repos, job.id, message, publisher, counts, phase, announce)
        return JobOutcome("failed", job.id, exc)


async def _run_workflow(
    job: ResearchJob,
    repos: Repositories,
    emit: ThrottledProgressEmitter,
    cancel_event: asyncio.Event,
    overrides: dict[str, Any],
) -> tuple[dict[str, Any], float | None]:
    if job.job_type == JobType.STRESS_TEST:
        result = await execute_stress_test_workflow(
            job.engagement_id,
            job.config.get("hypothesis_ids"),
            StressTestConfig.model_validate(job.config.get("stress_test") or {}),
            emit,
            cancel_event=cancel_event,
            repositories=repos,
            **overrides,
        )
        return result, None

    engagement = await repos.engagements.get_by_id(job.engagement_id)
    if engagement is None:
        raise NotFoundError(f"Engagement {job.engagement_id} no longer exists")
    outcome = await execute_research_workflow(
        engagement,
        job.config.get("thesis", ""),
        ResearchConfig.model_validate(job.config.get("research") or {}),
        emit,
        cancel_event=cancel_event,
        repositories=repos,
        transcripts=[ExpertTranscript(**t) for t in job.config.get("expert_transcripts") or []],
        **overrides,
    )
    return outcome.as_results(), outcome.synthesis.confidence_score


# ---------------------------------------------------------------------------
# Recovery: interrupted attempts & stale leases
# ---------------------------------------------------------------------------


async def abandon_attempt(
    job_id: str,
    exc: BaseException,
    max_retries: int | None = None,
    *,
    repositories: Repositories | None = None,
    redis=None,
    publisher: ProgressPublisher | None = None,
) -> JobOutcome:
    """
    Settle a job whose attempt was torn down from outside the event loop.

    A soft time limit raised while the loop waits in select() escapes
    `asyncio.run` without reaching `_run_leased`'s handler, so the job
    would stay RUNNING. The same retry ceiling applies here.
    """
    max_retries = settings.job_max_retries if max_retries is None else max_retries
    repos = repositories or get_sql_repositories()
    r = redis or create_redis()
    publisher = publisher or RedisProgressPublisher(r)

    try:
        job = await repos.jobs.get_by_id(job_id)
        if job is None or job.status.is_terminal:
            return JobOutcome("skipped", job_id, exc)
        await r.delete(lease_key(job_id))

        message = f"Attempt {job.attempts} interrupted: {str(exc) or type(exc).__name__}"
        if is_retryable(exc) and job.attempts <= max_retries:
            logger.warning("Job %s: %s, will retry", job_id, message)
            await _record_error(repos, job_id, message)
            return JobOutcome("retry", job_id, exc)

        await _fail(repos, job_id, message, publisher)
        return JobOutcome("failed", job_id, exc)
    finally:
        if redis is None:
            await r.aclose()
        if repositories is None:
            await dispose_engine()


async def reap_stale_jobs(
    *,
    repositories: Repositories | None = None,
    redis=None,
    publisher: ProgressPublisher | None = None,
    now: datetime | None = None,
) -> list[str]:
    """
    Fail RUNNING jobs whose lease has expired.

    A hard time limit, or a lost worker that is never redelivered, leaves
    the record RUNNING. Jobs touched within the last lease period are left
    alone so a redelivered task can take the lease first.
    """
    repos = repositories or get_sql_repositories()
    r = redis or create_redis()
    publisher = publisher or RedisProgressPublisher(r)
    now = now or datetime.now(UTC)
    reaped: list[str] = []

    try:
        for job in await repos.jobs.get_by_status(JobStatus.RUNNING):
            if (now - job.updated_at).total_seconds() < settings.job_lease_seconds:
                continue
            if await r.get(lease_key(job.id)):
                continue
            last = f" Last error: {job.error_message}" if job.error_message else ""
            try:
                await _fail(repos, job.id, f"Worker lost: lease expired.{last}", publisher)
            except InvalidTransitionError:
                logger.info("Job %s moved on while being reaped", job.id)
                continue
            reaped.append(job.id)
        if reaped:
            logger.warning("Reaped %d stale jobs: %s", len(reaped), reaped)
        return reaped
    finally:
        if redis is None:
            await r.aclose()
        if repositories is None:
            await dispose_engine()


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


async def _heartbeat(
    job: ResearchJob,
    repos: Repositories,
    r,
    lock,
    emitter: ThrottledProgressEmitter,
    cancel_event: asyncio.Event,
) -> None:
    interval = max(settings.job_lease_seconds / 3, 1)
    persisted = job.progress
    while True:
        await asyncio.sleep(interval)
        try:
            await lock.reacquire()
            if await r.get(cancel_key(job.id)):
                if not cancel_event.is_set():
                    logger.info("Job %s: cancellation flag observed", job.id)
                cancel_event.set()
            if emitter.progress > persisted:
                job = job.model_copy(
                    update={"progress": emitter.progress, "updated_at": datetime.now(UTC)}
                )
                await repos.jobs.update(job, expected_status=JobStatus.RUNNING)
                persisted = emitter.progress
        except InvalidTransitionError:
            logger.warning("Job %s left RUNNING underneath the heartbeat", job.id)
            cancel_event.set()
        except Exception as exc:
            logger.warning("Heartbeat for job %s failed: %s", job.id, exc)


# ---------------------------------------------------------------------------
# Status Helpers
# ---------------------------------------------------------------------------


async def _mark_running(repos: Repositories, job: ResearchJob, attempts: int) -> ResearchJob:
    if job.status == JobStatus.PENDING:
        running = job.transitioned(JobStatus.RUNNING, attempts=attempts)
        return await repos.jobs.update(running, expected_status=JobStatus.PENDING)
    running = job.model_copy(update={"attempts": attempts, "updated_at": datetime.now(UTC)})
    return await repos.jobs.update(running, expected_status=JobStatus.RUNNING)


async def _record_error(repos: Repositories, job_id: str, message: str) -> ResearchJob | None:
    job = await repos.jobs.get_by_id(job_id)
    if job is None or job.status.is_terminal:
        return None
    updated = job.model_copy(update={"error_message": message[:1000], "updated_at": datetime.now(UTC)})
    return await repos.jobs.update(updated, expected_status=job.status)


async def _fail(
    repos: Repositories,
    job_id: str,
    message: str,
    publisher: ProgressPublisher,
    counts: dict[str, int] | None = None,
    phase: str | None = None,
    announce: bool = True,
) -> None:
    job = await repos.jobs.get_by_id(job_id)
    if job is None or job.status.is_terminal:
        return
    failed = job.transitioned(
        JobStatus.FAILED,
        error_message=message[:1000],
        results={"partial_counts": counts or {}, "failed_phase": phase},
    )
    await repos.jobs.update(failed, expected_status=job.status)
    logger.info("Job %s marked failed: %s", job_id, message[:200])

    if announce:
        try:
            await publisher.publish(
                ProgressEvent(
                    type=ProgressEventType.ERROR,
                    job_id=job_id,
                    data={"error": message[:1000], "phase": phase, "progress": job.progress},
                )
            )
        except Exception as exc:
            logger.warning("Could not publish error event for job %s: %s", job_id, exc)


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------


def _run_task(task, job_id: str) -> dict:
    attempt = task.request.retries
    logger.info("[%s] Starting job %s (attempt %d)", task.request.id, job_id, attempt + 1)
    try:
        outcome = asyncio.run(execute_job(job_id, attempt=attempt, max_retries=task.max_retries))
    except SoftTimeLimitExceeded as exc:
        logger.error("[%s] Job %s hit the soft time limit", task.request.id, job_id)
        outcome = asyncio.run(abandon_attempt(job_id, exc, max_retries=task.max_retries))
    if outcome.status == "retry":
        raise task.retry(exc=outcome.error, countdown=retry_countdown(attempt))
    return outcome.summary()


@celery_app.task(
    bind=True,
    name="run_research_job",
    max_retries=settings.job_max_retries,
    default_retry_delay=settings.job_retry_backoff_seconds,
)
def run_research_job(self, job_id: str) -> dict:
    """Run the full research workflow for a job record."""
    return _run_task(self, job_id)


@celery_app.task(
    bind=True,
    name="run_stress_test_job",
    max_retries=settings.job_max_retries,
    default_retry_delay=settings.job_retry_backoff_seconds,
)
def run_stress_test_job(self, job_id: str) -> dict:
    """Run the stress-test workflow for a job record."""
    return _run_task(self, job_id)


@celery_app.task(name="reap_stale_jobs")
def reap_stale_jobs_task() -> list[str]:
    """Fail RUNNING jobs whose worker is gone (scheduled by Celery beat)."""
    return asyncio.run(reap_stale_jobs())
