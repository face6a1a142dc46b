# =============================================================================
# Research API — Job Submission, Status, Cancellation & Progress Stream
# =============================================================================
#
# ENDPOINTS:
#   POST /engagements/{id}/research       — submit a research job (202)
#   POST /engagements/{id}/stress-tests   — submit a stress-test job (202)
#   GET  /engagements/{id}/jobs           — list the engagement's jobs
#   GET  /research/jobs/{job_id}          — poll one job record
#   POST /research/jobs/{job_id}/cancel   — cancel a pending or running job
#   WS   /research/jobs/{job_id}/progress — live ProgressEvent stream
#
# Submission returns immediately with the job id; the Celery worker pool
# runs the workflow and the job record carries status, progress and the
# final results.
#
# ERROR MAPPING:
#   ValidationError         → 422
#   NotFoundError           → 404
#   ConflictError           → 409  (detail.existing_job_id)
#   RateLimitExceededError  → 429  (Retry-After header)
#   InvalidTransitionError  → 409  (cancelling a finished job)
#   QueueUnavailableError   → 503  (broker refused the job; job is FAILED)
#
# The progress socket first sends the job's current state and closes right
# away for a finished job. Unknown jobs are closed with code 4404.
# =============================================================================

import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from thesis_validator.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    QueueUnavailableError,
    RateLimitExceededError,
    ThesisValidatorError,
    ValidationError,
)
from thesis_validator.models.jobs import ResearchJob
from thesis_validator.models.requests import ResearchRequest, StressTestRequest
from thesis_validator.models.responses import JobAcceptedResponse, JobListResponse, JobResponse
from thesis_validator.services.jobs import JobService
from thesis_validator.services.progress import (
    create_redis,
    job_status_event,
    subscribe_progress,
)
from thesis_validator.services.repositories import get_sql_repositories

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Research"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_job_service() -> JobService:
    """
    JobService wired to the SQL repositories and Celery.

    Tests replace it via app.dependency_overrides[get_job_service].
    """
    repos = get_sql_repositories()
    return JobService(repos.jobs, repos.engagements)


def get_progress_redis():
    return create_redis()


def _http_error(exc: ThesisValidatorError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "existing_job_id": exc.existing_job_id},
        )
    if isinstance(exc, RateLimitExceededError):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, QueueUnavailableError):
        return HTTPException(
            status_code=503,
            detail={"message": str(exc), "job_id": exc.job_id},
        )
    return HTTPException(status_code=500, detail=str(exc))


def _accepted(job: ResearchJob) -> JobAcceptedResponse:
    return JobAcceptedResponse(
        job_id=job.id,
        engagement_id=job.engagement_id,
        job_type=job.job_type,
        status=job.status,
        status_url=f"/research/jobs/{job.id}",
        progress_url=f"/research/jobs/{job.id}/progress",
    )


# ---------------------------------------------------------------------------
# POST /engagements/{engagement_id}/research
# ---------------------------------------------------------------------------


@router.post(
    "/engagements/{engagement_id}/research",
    response_model=JobAcceptedResponse,
    status_code=202,
    summary="Start a research run for an investment thesis",
    description=(
        "Creates a pending research job and queues it on the worker pool. "
        "Only one job may be active per engagement."
    ),
)
async def submit_research(
    engagement_id: str,
    request: ResearchRequest,
    service: JobService = Depends(get_job_service),
) -> JobAcceptedResponse:
    try:
        job = await service.submit_research(
            engagement_id,
            request.thesis,
            request.config,
            expert_transcripts=[t.model_dump() for t in request.expert_transcripts],
        )
    except ThesisValidatorError as exc:
        raise _http_error(exc) from exc
    return _accepted(job)


@router.post(
    "/engagements/{engagement_id}/stress-tests",
    response_model=JobAcceptedResponse,
    status_code=202,
    summary="Stress-test the engagement's hypotheses",
)
async def submit_stress_test(
    engagement_id: str,
    request: StressTestRequest,
    service: JobService = Depends(get_job_service),
) -> JobAcceptedResponse:
    try:
        job = await service.submit_stress_test(
            engagement_id, request.hypothesis_ids, request.config
        )
    except ThesisValidatorError as exc:
        raise _http_error(exc) from exc
    return _accepted(job)


# ---------------------------------------------------------------------------
# Job queries
# ---------------------------------------------------------------------------


@router.get(
    "/engagements/{engagement_id}/jobs",
    response_model=JobListResponse,
    summary="List jobs for an engagement (newest first)",
)
async def list_jobs(
    engagement_id: str,
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    jobs = await service.list_jobs(engagement_id)
    return JobListResponse(
        engagement_id=engagement_id, jobs=[JobResponse.from_job(j) for j in jobs]
    )


@router.get(
    "/research/jobs/{job_id}",
    response_model=JobResponse,
    summary="Get a job record",
)
async def get_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    try:
        job = await service.get_job(job_id)
    except ThesisValidatorError as exc:
        raise _http_error(exc) from exc
    return JobResponse.from_job(job)


@router.post(
    "/research/jobs/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a pending or running job",
    description=(
        "A pending job fails immediately. A running job is flagged; the "
        "worker stops at the next phase boundary or external call."
    ),
)
async def cancel_job(
    job_id: str,
    service: JobService = Depends(get_job_service),
) -> JobResponse:
    try:
        job = await service.cancel_job(job_id)
    except ThesisValidatorError as exc:
        raise _http_error(exc) from exc
    return JobResponse.from_job(job)


# ---------------------------------------------------------------------------
# WS /research/jobs/{job_id}/progress
# ---------------------------------------------------------------------------


@router.websocket("/research/jobs/{job_id}/progress")
async def stream_progress(
    websocket: WebSocket,
    job_id: str,
    redis=Depends(get_progress_redis),
    service: JobService = Depends(get_job_service),
) -> None:
    """Relay the job's progress events until `completed` or `error`."""

    async def snapshot():
        return job_status_event(await service.get_job(job_id))

    await websocket.accept()
    try:
        async for event in subscribe_progress(redis, job_id, snapshot=snapshot):
            await websocket.send_text(event.model_dump_json())
    except NotFoundError:
        logger.info("Progress requested for unknown job %s", job_id)
        await websocket.close(code=4404)
        return
    except WebSocketDisconnect:
        logger.info("Progress client for job %s disconnected", job_id)
        return
    finally:
        await redis.aclose()
    await websocket.close()
