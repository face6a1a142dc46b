# =============================================================================
# Research Workflow — Entry Point for a Full Diligence Run
# =============================================================================
#
#   execute_research_workflow(engagement, thesis, config, on_event)
#
# 1. Validate the thesis and config (ValidationError, nothing emitted)
# 2. Build a WorkerContext: deal memory, repositories, LLM, capabilities,
#    the caller's event sink and cancellation signal
# 3. Emit workflow.started, run the Conductor, emit workflow.completed
# 4. On failure emit workflow.failed (phase, error, partial counts) and
#    re-raise the WorkflowError
#
# Collaborators default to the production singletons and can all be
# injected (tests pass in-memory fakes).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping

from thesis_validator.agents.base import KeyedLocks, Worker, WorkerContext, WorkerId
from thesis_validator.agents.conductor import Conductor, ResearchOutcome
from thesis_validator.agents.synthesizer import ExpertTranscript
from thesis_validator.config import settings
from thesis_validator.errors import ValidationError, WorkflowError
from thesis_validator.models.events import EngagementEvent, EngagementEventType
from thesis_validator.models.jobs import Engagement, ResearchConfig
from thesis_validator.services.capabilities import SourceCapabilities, get_capabilities
from thesis_validator.services.deal_memory import ChromaDealMemory, DealMemory
from thesis_validator.services.llm import LLMProvider, get_llm_provider
from thesis_validator.services.repositories import Repositories, get_sql_repositories

logger = logging.getLogger(__name__)

EventSink = Callable[[EngagementEvent], None]


def validate_thesis(thesis: str) -> str:
    """
    Raises:
        ValidationError: Thesis shorter than min_thesis_length or longer
            than max_thesis_length after stripping.
    """
    text = (thesis or "").strip()
    if len(text) < settings.min_thesis_length:
        raise ValidationError(
            f"Thesis must be at least {settings.min_thesis_length} characters"
        )
    if len(text) > settings.max_thesis_length:
        raise ValidationError(
            f"Thesis must be at most {settings.max_thesis_length} characters"
        )
    return text


def build_context(
    engagement_id: str,
    on_event: EventSink | None = None,
    *,
    memory: DealMemory | None = None,
    repositories: Repositories | None = None,
    llm: LLMProvider | None = None,
    capabilities: SourceCapabilities | None = None,
    cancel_event: asyncio.Event | None = None,
) -> WorkerContext:
    """Assemble a WorkerContext, filling unset collaborators with defaults."""
    return WorkerContext(
        engagement_id=engagement_id,
        memory=memory or ChromaDealMemory(engagement_id),
        repositories=repositories or get_sql_repositories(),
        llm=llm or get_llm_provider(),
        capabilities=capabilities or get_capabilities(),
        emit=on_event or (lambda event: None),
        cancel_event=cancel_event or asyncio.Event(),
        locks=KeyedLocks(),
        settings=settings,
    )


async def execute_research_workflow(
    engagement: Engagement,
    thesis: str,
    config: ResearchConfig | dict | None = None,
    on_event: EventSink | None = None,
    *,
    memory: DealMemory | None = None,
    repositories: Repositories | None = None,
    llm: LLMProvider | None = None,
    capabilities: SourceCapabilities | None = None,
    cancel_event: asyncio.Event | None = None,
    workers: Mapping[WorkerId, Worker] | None = None,
    transcripts: list[ExpertTranscript] | None = None,
) -> ResearchOutcome:
    """
    Run thesis structuring, comparables, evidence, contradictions and
    synthesis for one engagement.

    Args:
        engagement: Engagement the thesis belongs to.
        thesis: Investment thesis text (10-2000 characters).
        config: ResearchConfig or a dict validated into one.
        on_event: Sink for EngagementEvents (e.g. a ThrottledProgressEmitter).
        cancel_event: Set it to stop the run at the next phase boundary or
            before the next external call.

    Returns:
        ResearchOutcome with the tree, phase results, verdict and counts.

    Raises:
        ValidationError: Invalid thesis or config (before any work).
        WorkflowError: A phase failed; `.phase` and `.counts` describe where.
    """
    text = validate_thesis(thesis)
    if config is None:
        config = ResearchConfig()
    elif not isinstance(config, ResearchConfig):
        try:
            config = ResearchConfig.model_validate(config)
        except Exception as exc:
            raise ValidationError(f"Invalid research config: {exc}") from exc

    context = build_context(
        engagement.id,
        on_event,
        memory=memory,
        repositories=repositories,
        llm=llm,
        capabilities=capabilities,
        cancel_event=cancel_event,
    )
    conductor = Conductor(workers)

    context.emit_event(
        EngagementEventType.WORKFLOW_STARTED,
        {
            "workflow_type": "research",
            "thesis": text[:200],
            "search_depth": config.search_depth,
            "progress": 0,
        },
    )
    try:
        outcome = await conductor.run(engagement, text, config, context, transcripts)
    except WorkflowError as exc:
        logger.error(
            "Research workflow failed for %s in phase %s: %s",
            engagement.id, exc.phase, exc,
        )
        context.emit_event(
            EngagementEventType.WORKFLOW_FAILED,
            {
                "workflow_type": "research",
                "phase": exc.phase,
                "error": str(exc),
                "cancelled": context.cancelled,
                **exc.counts,
            },
        )
        raise

    synthesis = outcome.synthesis
    context.emit_event(
        EngagementEventType.WORKFLOW_COMPLETED,
        {
            "workflow_type": "research",
            "verdict": synthesis.verdict,
            "confidence_score": synthesis.confidence_score,
            "progress": 100,
            **outcome.counts.snapshot(),
        },
    )
    logger.info(
        "Research workflow complete for %s: verdict=%s score=%.1f counts=%s",
        engagement.id, synthesis.verdict, synthesis.confidence_score,
        outcome.counts.snapshot(),
    )
    return outcome
