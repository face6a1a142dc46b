# =============================================================================
# Integration Tests — Conductor & Research Workflow
# =============================================================================
#
# Runs the full five-phase LangGraph workflow over in-memory fakes and
# checks the event stream, phase ordering, abort/cancel behaviour and the
# results summary stored on the job.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fakes import (
    THESIS,
    FakeEmbedder,
    FakeLLM,
    FakeSearch,
    InMemoryDealMemory,
    make_engagement,
    make_repositories,
    sentiment_by_keyword,
    web_result,
)

from thesis_validator.agents.base import WorkerId
from thesis_validator.agents.comparables_finder import ComparablesResult
from thesis_validator.agents.conductor import PHASES, Conductor, Phase, default_workers
from thesis_validator.agents.synthesizer import Synthesizer
from thesis_validator.errors import ValidationError, WorkflowCancelledError, WorkflowError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.jobs import ResearchConfig
from thesis_validator.services.capabilities import SourceCapabilities
from thesis_validator.workflows.research import execute_research_workflow, validate_thesis


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _analysis(prompt: str):
    if "decline" in prompt.lower():
        return {"is_contradiction": True, "severity": "high", "explanation": "Fewer independent practices"}
    return {"is_contradiction": False}


def _llm() -> FakeLLM:
    return FakeLLM(
        {
            "Classify the sentiment": sentiment_by_keyword,
            "Analyze whether": _analysis,
        }
    )


def _search() -> FakeSearch:
    return FakeSearch(
        [
            web_result(1, "Dental software spending shows strong growth of 12% a year in the US."),
            web_result(2, "Cloud adoption among dental practices keeps growing across all regions."),
            web_result(3, "Independent dental practice counts are in decline as DSOs buy clinics."),
        ]
    )


class _Failing:
    def __init__(self, exc: BaseException) -> None:
        self.exc = exc

    async def execute(self, request, context):
        raise self.exc


class _CancellingComparables:
    """Stands in for the comparables worker and cancels the run."""

    async def execute(self, request, context):
        context.cancel_event.set()
        return ComparablesResult()


class _ConfidenceSnapshot:
    """Delegates to the real evidence gatherer and records confidences afterwards."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.confidences: dict[str, float] = {}

    async def execute(self, request, context):
        result = await self.inner.execute(request, context)
        self.confidences = {h.id: h.confidence for h in await context.memory.list_hypotheses()}
        return result


def _research(
config=None, *, workers=None, cancel=False, llm=None, thesis=THESIS):
    async def scenario():
        memory = InMemoryDealMemory()
        events = []
        cancel_event = asyncio.Event()
        if cancel:
            cancel_event.set()
        state = {"memory": memory, "events": events, "llm": llm or _llm()}
        try:
            state["outcome"] = await execute_research_workflow(
                make_engagement(),
                thesis,
                config or ResearchConfig(sources=["web"]),
                events.append,
                memory=memory,
                repositories=make_repositories(),
                llm=state["llm"],
                capabilities=SourceCapabilities(embedder=FakeEmbedder(), search=_search()),
                cancel_event=cancel_event,
                workers=workers,
            )
        except WorkflowError as exc:
            state["error"] = exc
        return state

    return _run(scenario())


def _phase_events(events, event_type):
    return [e.data["phase"] for e in events if e.type == event_type]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestConductorConstruction:
    def test_missing_worker_rejected(self):
        with pytest.raises(ValueError, match="missing workers"):
            Conductor({WorkerId.SYNTHESIZER: Synthesizer()})

    def test_default_registry_complete(self):
        assert set(default_workers()) == set(WorkerId)
        Conductor()


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


class TestResearchWorkflow:
    def test_phases_run_in_order(self):
        state = _research()
        events = state["events"]
        assert "error" not in state
        assert events[0].type == EngagementEventType.WORKFLOW_STARTED
        assert events[-1].type == EngagementEventType.WORKFLOW_COMPLETED
        assert _phase_events(events, EngagementEventType.PHASE_STARTED) == PHASES
        assert _phase_events(events, EngagementEventType.PHASE_COMPLETED) == PHASES

    def test_progress_increases(self):
        events = _research()["events"]
        progress = [e.data["progress"] for e in events if "progress" in e.data]
        assert progress == sorted(progress)
        assert progress[0] == 0 and progress[-1] == 100

    def test_counts_and_results(self):
        state = _research()
        outcome = state["outcome"]
        memory = state["memory"]

        # Fallback decomposition: thesis + 3 sub-theses + 2 assumptions.
        assert outcome.counts.hypotheses == 6
        # Every gather sees the same three articles; later gathers link them.
        assert outcome.counts.evidence == 3
        assert len(memory.evidence) == 3
        assert outcome.counts.contradictions == len(outcome.contradictions.contradictions) >= 1

        results = outcome.as_results()
        assert results["verdict"] in {"proceed", "review", "reject"}
        assert results["counts"] == outcome.counts.snapshot()
        assert results["root_hypothesis_id"] == outcome.build.root.id
        assert "comparables" in results and "risk_assessment" in results

    def test_phase_completed_carries_counts(self):
        events = _research()["events"]
        completed = [e for e in events if e.type == EngagementEventType.PHASE_COMPLETED]
        assert completed[0].data["hypotheses"] == 6
        assert all({"hypotheses", "evidence", "contradictions"} <= set(e.data) for e in completed)

    def test_disabled_comparables_skipped(self):
        state = _research(ResearchConfig(sources=["web"], enable_comparables=False))
        completed = {
            e.data["phase"]: e.data
            for e in state["events"]
            if e.type == EngagementEventType.PHASE_COMPLETED
        }
        assert completed[Phase.COMPARABLES_SEARCH]["skipped"] is True
        assert completed[Phase.EVIDENCE_GATHERING]["skipped"] is False
        assert state["outcome"].comparables is None
        assert state["llm"].count("Analyze this investment thesis") == 0

    def test_disabled_contradictions_skipped(self):
        state = _research(ResearchConfig(sources=["web"], enable_contradictions=False))
        assert state["outcome"].contradictions is None
        assert state["outcome"].counts.contradictions == 0
        assert "risk_assessment" not in state["outcome"].as_results()


# ---------------------------------------------------------------------------
# Failure & cancellation
# ---------------------------------------------------------------------------


class TestWorkflowAbort:
    def test_phase_failure_aborts(self):
        workers = default_workers()
        gatherer = _ConfidenceSnapshot(workers[WorkerId.EVIDENCE_GATHERER])
        workers[WorkerId.EVIDENCE_GATHERER] = gatherer
        workers[WorkerId.CONTRADICTION_HUNTER] = _Failing(RuntimeError("search quota exhausted"))
        state = _research(workers=workers)

        error = state["error"]
        assert error.phase == Phase.CONTRADICTION_ANALYSIS
        assert "search quota exhausted" in str(error)
        assert isinstance(error.__cause__, RuntimeError)
        assert error.counts["hypotheses"] == 6
        assert error.counts["evidence"] == 3

        # Confidences gathered before the failure are kept as they were
        kept = {h.id: h.confidence for h in state["memory"].hypotheses.values()}
        assert gatherer.confidences and kept == gatherer.confidences
        assert any(c != 0.5 for c in kept.values())

        events = state["events"]
        assert Phase.SYNTHESIS not in _phase_events(events, EngagementEventType.PHASE_STARTED)
        assert Phase.CONTRADICTION_ANALYSIS not in _phase_events(
            events, EngagementEventType.PHASE_COMPLETED
        )
        failed = events[-1]
        assert failed.type == EngagementEventType.WORKFLOW_FAILED
        assert failed.data["phase"] == Phase.CONTRADICTION_ANALYSIS
        assert failed.data["hypotheses"] == 6
        assert failed.data["cancelled"] is False

    def test_cancelled_before_start(self):
        state = _research(cancel=True)
        error = state["error"]
        assert isinstance(error, WorkflowCancelledError)
        assert error.phase == Phase.THESIS_STRUCTURING
        assert _phase_events(state["events"], EngagementEventType.PHASE_STARTED) == []
        assert state["events"][-1].data["cancelled"] is True

    def test_cancelled_between_phases(self):
        workers = default_workers()
        workers[WorkerId.COMPARABLES_FINDER] = _CancellingComparables()
        state = _research(workers=workers)
        error = state["error"]
        assert isinstance(error, WorkflowCancelledError)
        assert error.phase == Phase.EVIDENCE_GATHERING
        assert _phase_events(state["events"], EngagementEventType.PHASE_STARTED) == [
            Phase.THESIS_STRUCTURING,
            Phase.COMPARABLES_SEARCH,
        ]


class TestValidation:
    def test_short_thesis_rejected_before_work(self):
        with pytest.raises(ValidationError):
            _research(thesis="too short")

    def test_invalid_config_dict(self):
        with pytest.raises(ValidationError, match="Invalid research config"):
            _research(config={"max_hypotheses": 50})

    def test_validate_thesis_strips(self):
        assert validate_thesis(f"  {THESIS}  ") == THESIS
