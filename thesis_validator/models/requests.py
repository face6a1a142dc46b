# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the research API. FastAPI turns any violation
# (thesis too short/long, max_hypotheses out of 1–10, unknown search depth)
# into a 422 before a job record is created.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field

from thesis_validator.models.jobs import ResearchConfig, StressTestConfig


class ExpertTranscriptInput(BaseModel):
    """An expert-call transcript to ingest as evidence during synthesis."""

    content: str = Field(..., min_length=20, max_length=50_000)
    expert_name: str | None = Field(default=None, max_length=200)
    call_id: str | None = Field(default=None, max_length=100)
    hypothesis_ids: list[str] = Field(
        default_factory=list,
        description="Hypotheses the call speaks to. Empty links it to the whole tree.",
    )


class ResearchRequest(BaseModel):
    """
    Request body for POST /engagements/{engagement_id}/research.

    Example:
        {
            "thesis": "Vertical SaaS consolidation in dental practice software "
                      "will drive 30% EBITDA margins by year three",
            "config": {"max_hypotheses": 5, "search_depth": "standard"}
        }
    """

    thesis: str = Field(
        ...,
        min_length=10,
        max_length=2000,
        description="Investment thesis to decompose and validate",
    )
    config: ResearchConfig = Field(default_factory=ResearchConfig)
    expert_transcripts: list[ExpertTranscriptInput] = Field(default_factory=list, max_length=20)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "thesis": (
                        "Dental practice software is fragmented and a platform "
                        "acquirer can reach 30% EBITDA margins within three years"
                    ),
                    "config": {"max_hypotheses": 5, "search_depth": "thorough"},
                }
            ]
        }
    )


class StressTestRequest(BaseModel):
    """Request body for POST /engagements/{engagement_id}/stress-tests."""

    hypothesis_ids: list[str] | None = Field(
        default=None,
        description="Hypotheses to attack. Omit to stress-test the whole tree.",
    )
    config: StressTestConfig = Field(default_factory=StressTestConfig)
