# =============================================================================
# Conductor — Research Phase Graph
# =============================================================================
#
# Runs one research workflow as a linear LangGraph StateGraph:
#
#   START ──▶ thesis_structuring ──▶ comparables_search ──▶ evidence_gathering
#         ──▶ contradiction_analysis ──▶ synthesis ──▶ END
#
# Every phase:
#   1. checks the cancellation signal
#   2. emits phase.started (with progress)
#   3. calls its worker
#   4. emits phase.completed with running counts
#      (hypotheses, evidence, contradictions)
#
# Disabled optional phases (comparables, contradictions) still emit
# start/complete, with skipped=True.
#
# Any exception inside a phase aborts the graph: it is re-raised as a
# WorkflowError carrying the phase name, the original message and the
# counts reached so far. Later phases do not start and emit nothing.
#
# WORKER REGISTRY:
# The conductor is built from a Mapping[WorkerId, Worker]. Every WorkerId
# must be present; a missing worker is a construction error (ValueError),
# never a run-time lookup failure.
#
# Evidence gathering fans out per hypothesis (root + sub-theses, capped at
# max_gather_hypotheses) with at most max_parallel_gathers in flight.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from thesis_validator.agents.base import Worker, WorkerContext, WorkerId
from thesis_validator.agents.comparables_finder import (
    ComparablesFinder,
    ComparablesRequest,
    ComparablesResult,
)
from thesis_validator.agents.contradiction_hunter import (
    ContradictionHunter,
    HuntRequest,
    HuntResult,
)
from thesis_validator.agents.evidence_gatherer import (
    EvidenceGatherer,
    GatherRequest,
    GatherResult,
)
from thesis_validator.agents.hypothesis_builder import (
    BuildRequest,
    BuildResult,
    HypothesisBuilder,
)
from thesis_validator.agents.synthesizer import (
    ExpertTranscript,
    SynthesisRequest,
    SynthesisResult,
    Synthesizer,
)
from thesis_validator.errors import WorkflowError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.hypothesis import HypothesisType
from thesis_validator.models.jobs import Engagement, ResearchConfig

logger = logging.getLogger(__name__)


class Phase:
    THESIS_STRUCTURING = "thesis_structuring"
    COMPARABLES_SEARCH = "comparables_search"
    EVIDENCE_GATHERING = "evidence_gathering"
    CONTRADICTION_ANALYSIS = "contradiction_analysis"
    SYNTHESIS = "synthesis"


PHASES = [
    Phase.THESIS_STRUCTURING,
    Phase.COMPARABLES_SEARCH,
    Phase.EVIDENCE_GATHERING,
    Phase.CONTRADICTION_ANALYSIS,
    Phase.SYNTHESIS,
]

# (progress at start, progress at completion)
_PHASE_PROGRESS: dict[str, tuple[int, int]] = {
    Phase.THESIS_STRUCTURING: (5, 20),
    Phase.COMPARABLES_SEARCH: (20, 30),
    Phase.EVIDENCE_GATHERING: (30, 60),
    Phase.CONTRADICTION_ANALYSIS: (60, 80),
    Phase.SYNTHESIS: (80, 95),
}


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RunCounts:
    hypotheses: int = 0
    evidence: int = 0
    contradictions: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "hypotheses": self.hypotheses,
            "evidence": self.evidence,
            "contradictions": self.contradictions,
        }


@dataclass
class ResearchOutcome:
    """Everything a completed run produced."""

    build: BuildResult
    synthesis: SynthesisResult
    counts: RunCounts
    comparables: ComparablesResult | None = None
    gathers: list[GatherResult] = field(default_factory=list)
    contradictions: HuntResult | None = None

    def as_results(self) -> dict[str, Any]:
        """JSON-ready summary stored on the job record."""
        results = self.synthesis.as_dict()
        results["counts"] = self.counts.snapshot()
        results["root_hypothesis_id"] = self.build.root.id if self.build.root else None
        results["key_questions"] = self.build.key_questions
        if self.comparables is not None:
            results["comparables"] = {
                "deals_found": len(self.comparables.comparable_deals),
                "identified_pattern": self.comparables.identified_pattern,
                "historical_success_rate": self.comparables.historical_success_rate,
                "frameworks": [f.name for f in self.comparables.applicable_frameworks],
            }
        if self.contradictions is not None:
            results["risk_assessment"] = {
                "overall_vulnerability": self.contradictions.vulnerability,
                "bear_case_themes": self.contradictions.bear_case_themes,
                "high_severity_count": sum(
                    1 for c in self.contradictions.contradictions if c.severity.value == "high"
                ),
            }
        return results


class ConductorState(TypedDict, total=False):
    """
    State flowing through the phase graph.

    `context` and `counts` are live objects, not JSON. Safe because the
    graph is compiled without a checkpointer.
    """

    # --- Input ---
    engagement: Engagement
    thesis: str
    config: ResearchConfig
    transcripts: list[ExpertTranscript]
    context: WorkerContext
    counts: RunCounts

    # --- Phase outputs ---
    build: BuildResult
    comparables: ComparablesResult | None
    gathers: list[GatherResult]
    contradictions: HuntResult | None
    synthesis: SynthesisResult


def default_workers() -> dict[WorkerId, Worker]:
    return {
        WorkerId.HYPOTHESIS_BUILDER: HypothesisBuilder(),
        WorkerId.COMPARABLES_FINDER: ComparablesFinder(),
        WorkerId.EVIDENCE_GATHERER: EvidenceGatherer(),
        WorkerId.CONTRADICTION_HUNTER: ContradictionHunter(),
        WorkerId.SYNTHESIZER: Synthesizer(),
    }


# ---------------------------------------------------------------------------
# Conductor
# ---------------------------------------------------------------------------


class Conductor:
    """Sequences the five research phases over a fixed worker registry."""

    def __init__(self, workers: Mapping[WorkerId, Worker] | None = None) -> None:
        workers = dict(default_workers() if workers is None else workers)
        missing = [w.value for w in WorkerId if w not in workers]
        if missing:
            raise ValueError(f"Conductor is missing workers: {', '.join(missing)}")
        self.workers: dict[WorkerId, Worker] = workers
        self.graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(ConductorState)
        builder.add_node(Phase.THESIS_STRUCTURING, self._phase(Phase.THESIS_STRUCTURING, self._structure))
        builder.add_node(Phase.COMPARABLES_SEARCH, self._phase(Phase.COMPARABLES_SEARCH, self._comparables))
        builder.add_node(Phase.EVIDENCE_GATHERING, self._phase(Phase.EVIDENCE_GATHERING, self._gather))
        builder.add_node(
            Phase.CONTRADICTION_ANALYSIS,
            self._phase(Phase.CONTRADICTION_ANALYSIS, self._contradictions),
        )
        builder.add_node(Phase.SYNTHESIS, self._phase(Phase.SYNTHESIS, self._synthesize))

        builder.add_edge(START, PHASES[0])
        for current, following in zip(PHASES, PHASES[1:]):
            builder.add_edge(current, following)
        builder.add_edge(PHASES[-1], END)
        return builder.compile()

    async def run(
        self,
        engagement: Engagement,
        thesis: str,
        config: ResearchConfig,
        context: WorkerContext,
        transcripts: list[ExpertTranscript] | None = None,
    ) -> ResearchOutcome:
        """
        Execute all phases for one engagement.

        Raises:
            WorkflowError: A phase failed (or the run was cancelled); carries
                the phase and the partial counts.
        """
        counts = RunCounts()
        initial: ConductorState = {
            "engagement": engagement,
            "thesis": thesis,
            "config": config,
            "transcripts": transcripts or [],
            "context": context,
            "counts": counts,
        }
        logger.info(
            "Conductor starting for engagement %s (depth=%s, comparables=%s, contradictions=%s)",
            engagement.id, config.search_depth, config.enable_comparables,
            config.enable_contradictions,
        )
        final = await self.graph.ainvoke(initial)
        return ResearchOutcome(
            build=final["build"],
            synthesis=final["synthesis"],
            counts=counts,
            comparables=final.get("comparables"),
            gathers=final.get("gathers", []),
            contradictions=final.get("contradictions"),
        )

    # -----------------------------------------------------------------------
    # Phase wrapper
    # -----------------------------------------------------------------------

    def _phase(
        self,
        name: str,
        body: Callable[[ConductorState], Awaitable[tuple[dict, bool]]],
    ) -> Callable[[ConductorState], Awaitable[dict]]:
        start_progress, end_progress = _PHASE_PROGRESS[name]

        async def node(state: ConductorState) -> dict:
            context = state["context"]
            counts = state["counts"]
            try:
                context.raise_if_cancelled(name)
                context.emit_event(
                    EngagementEventType.PHASE_STARTED,
                    {"phase": name, "progress": start_progress},
                )
                update, skipped = await body(state)
            except WorkflowError as exc:
                exc.phase = exc.phase or name
                if not exc.counts:
                    exc.counts = counts.snapshot()
                logger.warning("Phase %s aborted: %s", name, exc)
                raise
            except Exception as exc:
                logger.exception("Phase %s failed", name)
                raise WorkflowError(str(exc), phase=name, counts=counts.snapshot()) from exc

            context.emit_event(
                EngagementEventType.PHASE_COMPLETED,
                {
                    "phase": name,
                    "progress": end_progress,
                    "skipped": skipped,
                    **counts.snapshot(),
                },
            )
            return update

        return node

    # -----------------------------------------------------------------------
    # Phase bodies — each returns (state update, skipped)
    # -----------------------------------------------------------------------

    async def _structure(self, state: ConductorState) -> tuple[dict, bool]:
        engagement = state["engagement"]
        build: BuildResult = await self.workers[WorkerId.HYPOTHESIS_BUILDER].execute(
            BuildRequest(
                thesis=state["thesis"],
                max_hypotheses=state["config"].max_hypotheses,
                sector=engagement.sector,
                target_company=engagement.target_company_name,
            ),
            state["context"],
        )
        state["counts"].hypotheses = len(build.tree.nodes)
        return {"build": build}, False

    async def _comparables(self, state: ConductorState) -> tuple[dict, bool]:
        if not state["config"].enable_comparables:
            return {"comparables": None}, True
        engagement = state["engagement"]
        result = await self.workers[WorkerId.COMPARABLES_FINDER].execute(
            ComparablesRequest(
                thesis=state["thesis"],
                sector=engagement.sector,
                target_company=engagement.target_company_name,
            ),
            state["context"],
        )
        return {"comparables": result}, False

    async def _gather(self, state: ConductorState) -> tuple[dict, bool]:
        context = state["context"]
        config = state["config"]
        counts = state["counts"]
        gatherer = self.workers[WorkerId.EVIDENCE_GATHERER]

        targets = [
            node for node in state["build"].tree.nodes
            if node.type in (HypothesisType.THESIS, HypothesisType.SUB_THESIS)
        ][: context.settings.max_gather_hypotheses]
        semaphore = asyncio.Semaphore(context.settings.max_parallel_gathers)

        async def gather_one(hypothesis) -> GatherResult:
            async with semaphore:
                context.raise_if_cancelled(Phase.EVIDENCE_GATHERING)
                result = await gatherer.execute(
                    GatherRequest(
                        query=hypothesis.content,
                        hypothesis_ids=[hypothesis.id],
                        sources=list(config.sources),
                        max_results=config.max_evidence_per_hypothesis,
                        min_credibility=config.min_credibility,
                        symbols=list(config.symbols),
                    ),
                    context,
                )
                counts.evidence += len(result.evidence)
                context.emit_event(
                    EngagementEventType.RESEARCH_PROGRESS,
                    {
                        "phase": Phase.EVIDENCE_GATHERING,
                        "hypothesis_id": hypothesis.id,
                        "evidence_found": len(result.evidence),
                    },
                )
                return result

        outcomes = await asyncio.gather(
            *(gather_one(h) for h in targets), return_exceptions=True
        )
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise errors[0]
        return {"gathers": list(outcomes)}, False

    async def _contradictions(self, state: ConductorState) -> tuple[dict, bool]:
        config = state["config"]
        if not config.enable_contradictions:
            return {"contradictions": None}, True
        result: HuntResult = await self.workers[WorkerId.CONTRADICTION_HUNTER].execute(
            HuntRequest(hypothesis_ids=None, intensity=config.intensity),
            state["context"],
        )
        state["counts"].contradictions = len(result.contradictions)
        return {"contradictions": result}, False

    async def _synthesize(self, state: ConductorState) -> tuple[dict, bool]:
        config = state["config"]
        build = state["build"]
        result = await self.workers[WorkerId.SYNTHESIZER].execute(
            SynthesisRequest(
                thesis=state["thesis"],
                key_questions=build.key_questions,
                comparables=state.get("comparables"),
                contradictions=state.get("contradictions"),
                confidence_threshold=config.confidence_threshold,
                transcripts=state.get("transcripts") or [],
            ),
            state["context"],
        )
        return {"synthesis": result}, False
