# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the research API. Job records are exposed
# without internal bookkeeping (lease owners, raw embeddings).
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from thesis_validator.models.jobs import JobStatus, JobType, ResearchJob


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class JobAcceptedResponse(BaseModel):
    """Response for a 202 job submission."""

    job_id: str = Field(description="Id of the created job record")
    engagement_id: str
    job_type: JobType
    status: JobStatus = Field(description="Always 'pending' at submission")
    status_url: str = Field(description="Poll this URL for the job record")
    progress_url: str = Field(description="WebSocket URL streaming progress events")


class JobResponse(BaseModel):
    """Full job record for GET /research/jobs/{job_id}."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    engagement_id: str
    job_type: JobType
    status: JobStatus
    progress: int = Field(description="0–100")
    config: dict[str, Any]
    results: dict[str, Any] | None = None
    confidence_score: float | None = Field(
        default=None, description="Overall confidence, 0–100, set on completion"
    )
    error_message: str | None = None
    attempts: int = 0
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: ResearchJob) -> "JobResponse":
        return cls.model_validate(job.model_dump())


class JobListResponse(BaseModel):
    engagement_id: str
    jobs: list[JobResponse]
