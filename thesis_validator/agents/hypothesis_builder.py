# =============================================================================
# Hypothesis Builder — Thesis Decomposition into a Hypothesis Tree
# =============================================================================
#
# Turns a free-text investment thesis into a tree of testable claims:
#
#   thesis (root, confidence 0.5)
#   ├── sub_thesis ──supports (0.8)──▶ thesis
#   └── assumption ──requires (0.7)──▶ best-matching sub_thesis
#
# INITIAL CONFIDENCE:
#   sub_thesis  0.5 − (importance − 0.5) × 0.2
#               important claims start lower, they need more validation
#   assumption  clamp(0.5 + risk_modifier + (testability − 0.5) × 0.1,
#                     0.2, 0.7)
#               risk_modifier: high −0.15, medium −0.05, low +0.05
#
# FLOW:
#   1. Ask the LLM for a JSON decomposition (deterministic fallback when
#      the reply is unusable)
#   2. Build nodes, embed them in one batch
#   3. Structural edges + LLM-proposed extra edges (validated against ids)
#   4. Write nodes/edges to deal memory, replicate to PostgreSQL
#   5. Emit hypothesis.created per node
# =============================================================================

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.agents.base import WorkerContext, WorkerId
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.hypothesis import (
    EdgeRelationship,
    HypothesisEdge,
    HypothesisNode,
    HypothesisTree,
    HypothesisType,
    RiskLevel,
)
from thesis_validator.services.llm import complete_json, truncate_tokens

logger = logging.getLogger(__name__)

_WORD_SPLIT = re.compile(r"\W+")

_RISK_MODIFIERS: dict[RiskLevel, float] = {
    RiskLevel.HIGH: -0.15,
    RiskLevel.MEDIUM: -0.05,
    RiskLevel.LOW: 0.05,
}

# Used when the LLM reply cannot be parsed.
_FALLBACK_SUB_THESES: list[tuple[str, float]] = [
    ("The target's market is large enough and growing to support the thesis: {thesis}", 0.8),
    ("The target holds a defensible competitive position relevant to: {thesis}", 0.7),
    ("The target's financial profile supports the value creation plan in: {thesis}", 0.6),
]

_FALLBACK_ASSUMPTIONS: list[tuple[str, float, RiskLevel]] = [
    ("Current market growth rates continue over the holding period", 0.7, RiskLevel.MEDIUM),
    ("The target's competitive position is not eroded by new entrants", 0.5, RiskLevel.HIGH),
]


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

DECOMPOSITION_SYSTEM = (
    "You are a private equity diligence lead. You break investment theses "
    "into independent, testable hypotheses and name the assumptions each "
    "one relies on. Respond with JSON only."
)

DECOMPOSITION_PROMPT = """Decompose the following investment thesis into testable hypotheses.

THESIS: {thesis}
{context}
Return a JSON object with this exact shape:
{{
  "original_thesis": "<the thesis restated in one sentence>",
  "sub_theses": [{{"content": "<claim>", "importance": <0.0-1.0>}}],
  "assumptions": [{{"content": "<assumption>", "testability": <0.0-1.0>,
                    "risk_level": "low" | "medium" | "high"}}],
  "key_questions": ["<question diligence must answer>"]
}}

Return at most {max_sub_theses} sub_theses."""

RELATIONSHIP_PROMPT = """Here are hypotheses from one investment thesis:

{hypotheses}

Identify causal relationships between them that are not simple parent/child
links. Return a JSON array of objects:
[{{"source_id": "<id>", "target_id": "<id>",
   "relationship": "requires" | "supports" | "contradicts" | "implies",
   "strength": <0.0-1.0>, "reasoning": "<one sentence>"}}]
Return [] if there are none."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class BuildRequest:
    thesis: str
    max_hypotheses: int = 5
    sector: str | None = None
    target_company: str | None = None


@dataclass
class BuildResult:
    tree: HypothesisTree
    key_questions: list[str] = field(default_factory=list)

    @property
    def root(self) -> HypothesisNode:
        return self.tree.root


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def sub_thesis_confidence(importance: float) -> float:
    return round(_clamp(0.5 - (importance - 0.5) * 0.2, 0.0, 1.0), 2)


def assumption_confidence(testability: float, risk_level: RiskLevel) -> float:
    value = 0.5 + _RISK_MODIFIERS[risk_level] + (testability - 0.5) * 0.1
    return round(_clamp(value, 0.2, 0.7), 2)


def word_overlap(a: str, b: str) -> float:
    """Shared words longer than 3 characters over the larger word set."""
    words_a = {w for w in _WORD_SPLIT.split(a.lower()) if len(w) > 3}
    words_b = {w for w in _WORD_SPLIT.split(b.lower()) if len(w) > 3}
    return len(words_a & words_b) / max(len(words_a), len(words_b), 1)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: Any, default: float) -> float:
    try:
        return _clamp(float(value), 0.0, 1.0)
    except (TypeError, ValueError):
        return default


def _as_risk(value: Any) -> RiskLevel:
    try:
        return RiskLevel(str(value).lower())
    except ValueError:
        return RiskLevel.MEDIUM


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class HypothesisBuilder:
    """Decomposes a thesis into a persisted hypothesis tree."""

    worker_id = WorkerId.HYPOTHESIS_BUILDER

    async def execute(self, request: BuildRequest, context: WorkerContext) -> BuildResult:
        context.raise_if_cancelled("thesis decomposition")
        context.emit_event(
            EngagementEventType.AGENT_STATUS,
            {"status": "thinking", "message": "Analyzing investment thesis"},
            self.worker_id,
        )

        decomposition = await self._decompose(request, context)
        nodes = self._build_nodes(request, decomposition, context.engagement_id)
        await self._embed(nodes, context)

        edges = self._structural_edges(nodes)
        edges.extend(await self._additional_edges(nodes, edges, context))

        tree = HypothesisTree(engagement_id=context.engagement_id, nodes=nodes, edges=edges)
        await self._persist(tree, context)

        for node in nodes:
            context.emit_event(
                EngagementEventType.HYPOTHESIS_CREATED,
                {
                    "hypothesis_id": node.id,
                    "type": node.type.value,
                    "content": node.content,
                    "confidence": node.confidence,
                    "parent_id": node.parent_id,
                },
                self.worker_id,
            )

        logger.info(
            "Built hypothesis tree for %s: %d nodes, %d edges",
            context.engagement_id, len(nodes), len(edges),
        )
        return BuildResult(
            tree=tree,
            key_questions=[str(q) for q in decomposition.get("key_questions") or []],
        )

    # -----------------------------------------------------------------------
    # Decomposition
    # -----------------------------------------------------------------------

    async def _decompose(self, request: BuildRequest, context: WorkerContext) -> dict[str, Any]:
        lines = []
        if request.sector:
            lines.append(f"Sector: {request.sector}")
        if request.target_company:
            lines.append(f"Target Company: {request.target_company}")
        prompt = DECOMPOSITION_PROMPT.format(
            thesis=truncate_tokens(request.thesis),
            context="\n".join(lines) + ("\n" if lines else ""),
            max_sub_theses=request.max_hypotheses,
        )

        try:
            async with context.llm_semaphore:
                parsed = await complete_json(context.llm, prompt, system=DECOMPOSITION_SYSTEM)
        except Exception as exc:
            logger.warning("Thesis decomposition call failed, using fallback: %s", exc)
            parsed = None

        if not isinstance(parsed, dict) or not isinstance(parsed.get("sub_theses"), list):
            return self._fallback_decomposition(request)
        return parsed

    @staticmethod
    def _fallback_decomposition(request: BuildRequest) -> dict[str, Any]:
        return {
            "original_thesis": request.thesis,
            "sub_theses": [
                {"content": template.format(thesis=request.thesis), "importance": importance}
                for template, importance in _FALLBACK_SUB_THESES
            ],
            "assumptions": [
                {"content": content, "testability": testability, "risk_level": risk.value}
                for content, testability, risk in _FALLBACK_ASSUMPTIONS
            ],
            "key_questions": [],
        }

    @staticmethod
    def _build_nodes(
        request: BuildRequest, decomposition: dict[str, Any], engagement_id: str
    ) -> list[HypothesisNode]:
        root_content = str(decomposition.get("original_thesis") or "").strip() or request.thesis
        root = HypothesisNode(
            engagement_id=engagement_id,
            type=HypothesisType.THESIS,
            content=root_content,
            confidence=0.5,
        )
        nodes = [root]

        sub_theses = [
            item for item in decomposition.get("sub_theses") or []
            if isinstance(item, dict) and str(item.get("content") or "").strip()
        ][: request.max_hypotheses]
        for item in sub_theses:
            importance = _as_float(item.get("importance"), 0.5)
            nodes.append(
                HypothesisNode(
                    engagement_id=engagement_id,
                    parent_id=root.id,
                    type=HypothesisType.SUB_THESIS,
                    content=str(item["content"]).strip(),
                    confidence=sub_thesis_confidence(importance),
                    importance=importance,
                )
            )

        for item in decomposition.get("assumptions") or []:
            if not isinstance(item, dict) or not str(item.get("content") or "").strip():
                continue
            testability = _as_float(item.get("testability"), 0.5)
            risk = _as_risk(item.get("risk_level"))
            nodes.append(
                HypothesisNode(
                    engagement_id=engagement_id,
                    type=HypothesisType.ASSUMPTION,
                    content=str(item["content"]).strip(),
                    confidence=assumption_confidence(testability, risk),
                    testability=testability,
                    risk_level=risk,
                )
            )
        return nodes

    @staticmethod
    async def _embed(nodes: list[HypothesisNode], context: WorkerContext) -> None:
        try:
            vectors = await context.capabilities.embedder.embed_many([n.content for n in nodes])
        except Exception as exc:
            logger.warning("Hypothesis embedding failed, relevance will use defaults: %s", exc)
            return
        for node, vector in zip(nodes, vectors):
            node.embedding = list(vector)

    # -----------------------------------------------------------------------
    # Relationships
    # -----------------------------------------------------------------------

    @staticmethod
    def _structural_edges(nodes: list[HypothesisNode]) -> list[HypothesisEdge]:
        root = nodes[0]
        sub_theses = [n for n in nodes if n.type == HypothesisType.SUB_THESIS]
        edges = [
            HypothesisEdge(
                source_id=sub.id,
                target_id=root.id,
                relationship=EdgeRelationship.SUPPORTS,
                strength=0.8,
                reasoning="Sub-thesis supports overall thesis",
            )
            for sub in sub_theses
        ]

        for node in nodes:
            if node.type != HypothesisType.ASSUMPTION:
                continue
            if not sub_theses:
                node.parent_id = root.id
                continue
            best, best_score = sub_theses[0], 0.0
            for sub in sub_theses:
                score = word_overlap(node.content, sub.content)
                if score > best_score:
                    best, best_score = sub, score
            node.parent_id = best.id
            edges.append(
                HypothesisEdge(
                    source_id=node.id,
                    target_id=best.id,
                    relationship=EdgeRelationship.REQUIRES,
                    strength=0.7,
                    reasoning="Assumption required for sub-thesis validity",
                )
            )
        return edges

    async def _additional_edges(
        self,
        nodes: list[HypothesisNode],
        existing: list[HypothesisEdge],
        context: WorkerContext,
    ) -> list[HypothesisEdge]:
        if len(nodes) < 3:
            return []

        listing = "\n".join(f"- [{n.id}] ({n.type.value}) {n.content}" for n in nodes)
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(
                    context.llm, RELATIONSHIP_PROMPT.format(hypotheses=truncate_tokens(listing))
                )
        except Exception as exc:
            logger.warning("Relationship discovery failed: %s", exc)
            return []
        if not isinstance(parsed, list):
            return []

        ids = {n.id for n in nodes}
        seen = {(e.source_id, e.target_id, e.relationship) for e in existing}
        extra: list[HypothesisEdge] = []
        for item in parsed:
            if not isinstance(item, dict):
                continue
            source, target = item.get("source_id"), item.get("target_id")
            if source not in ids or target not in ids or source == target:
                continue
            try:
                relationship = EdgeRelationship(str(item.get("relationship")).lower())
            except ValueError:
                continue
            if (source, target, relationship) in seen:
                continue
            seen.add((source, target, relationship))
            extra.append(
                HypothesisEdge(
                    source_id=source,
                    target_id=target,
                    relationship=relationship,
                    strength=_as_float(item.get("strength"), 0.5),
                    reasoning=str(item.get("reasoning") or "") or None,
                )
            )
        return extra

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    @staticmethod
    async def _persist(tree: HypothesisTree, context: WorkerContext) -> None:
        repos = context.repositories
        for node in tree.nodes:
            await context.memory.put_hypothesis(node)
            await repos.secondary.replicate(
                f"hypothesis.create:{node.id}",
                functools.partial(repos.hypotheses.create, node),
            )
        for edge in tree.edges:
            await context.memory.put_edge(edge)
            await repos.secondary.replicate(
                f"hypothesis_edge.create:{edge.source_id}->{edge.target_id}",
                functools.partial(repos.hypotheses.create_edge, context.engagement_id, edge),
            )
