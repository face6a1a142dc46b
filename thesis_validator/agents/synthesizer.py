# =============================================================================
# Synthesizer — Verdict, Summary & Expert Transcript Intake
# =============================================================================
#
# Final phase of a research run. Reads the hypothesis tree back from deal
# memory (so it sees every confidence update made during gathering) and
# combines it with the comparables and contradiction findings.
#
#   overall_confidence = clamp(mean(hypothesis confidence)
#                              − 0.3 × vulnerability, 0, 1)
#   confidence_score   = round(overall_confidence × 100, 1)
#
#   verdict  proceed  confidence_score ≥ confidence_threshold
#            reject   confidence_score < reject_threshold
#            review   otherwise
#
# EXPERT TRANSCRIPTS:
# Transcripts attached to the request are stored as `expert` evidence
# before the verdict is computed. Their identity is content-derived, so a
# transcript submitted twice is reported as a duplicate of the first
# record and does not move confidence a second time.
# =============================================================================

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.agents.base import WorkerContext, WorkerId
from thesis_validator.agents.comparables_finder import ComparablesResult
from thesis_validator.agents.contradiction_hunter import HuntResult
from thesis_validator.agents.evidence_gatherer import (
    apply_confidence_updates,
    classify_sentiment,
    relevance_score,
)
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.evidence import (
    EvidenceNode,
    EvidenceRelevance,
    EvidenceSource,
    EvidenceSourceType,
    Severity,
)
from thesis_validator.models.hypothesis import HypothesisNode, HypothesisStatus
from thesis_validator.services.llm import complete_json, truncate_tokens
from thesis_validator.services.scoring import PublicationType, SourceMetadata, score_credibility

logger = logging.getLogger(__name__)

VULNERABILITY_PENALTY = 0.3
DEFAULT_REJECT_THRESHOLD = 40.0

SUMMARY_PROMPT = """You are writing the conclusion of an investment thesis diligence review.

THESIS: {thesis}
VERDICT: {verdict} (confidence {score:.1f}/100)

HYPOTHESES:
{hypotheses}

CONTRADICTIONS:
{contradictions}

COMPARABLES: {comparables}

Return JSON:
{{
  "summary": "<3-4 sentence summary>",
  "key_findings": ["..."],
  "opportunities": ["..."]
}}"""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ExpertTranscript:
    content: str
    expert_name: str | None = None
    call_id: str | None = None
    hypothesis_ids: list[str] = field(default_factory=list)


@dataclass
class TranscriptOutcome:
    evidence_id: str
    duplicate_of: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None


@dataclass
class SynthesisRequest:
    thesis: str
    key_questions: list[str] = field(default_factory=list)
    comparables: ComparablesResult | None = None
    contradictions: HuntResult | None = None
    confidence_threshold: float = 70.0
    reject_threshold: float = DEFAULT_REJECT_THRESHOLD
    transcripts: list[ExpertTranscript] = field(default_factory=list)


@dataclass
class SynthesisResult:
    verdict: str
    overall_confidence: float
    confidence_score: float
    summary: str
    key_findings: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    transcripts: list[TranscriptOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict,
            "overall_confidence": self.overall_confidence,
            "confidence_score": self.confidence_score,
            "summary": self.summary,
            "key_findings": self.key_findings,
            "risks": self.risks,
            "opportunities": self.opportunities,
            "recommendations": self.recommendations,
            "transcripts": [
                {"evidence_id": t.evidence_id, "duplicate_of": t.duplicate_of}
                for t in self.transcripts
            ],
        }


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------


def overall_confidence(hypotheses: list[HypothesisNode], vulnerability: float) -> float:
    if not hypotheses:
        return 0.5
    mean = sum(h.confidence for h in hypotheses) / len(hypotheses)
    return round(min(max(mean - vulnerability * VULNERABILITY_PENALTY, 0.0), 1.0), 4)


def verdict_for(score: float, threshold: float, reject_threshold: float) -> str:
    if score >= threshold:
        return "proceed"
    if score < reject_threshold:
        return "reject"
    return "review"


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class Synthesizer:
    worker_id = WorkerId.SYNTHESIZER

    async def execute(self, request: SynthesisRequest, context: WorkerContext) -> SynthesisResult:
        context.raise_if_cancelled("synthesis")
        context.emit_event(
            EngagementEventType.AGENT_STATUS,
            {"status": "thinking", "message": "Synthesizing findings"},
            self.worker_id,
        )

        transcripts = [
            await self.ingest_transcript(transcript, request.thesis, context)
            for transcript in request.transcripts
        ]

        hypotheses = await context.memory.list_hypotheses()
        hunt = request.contradictions
        vulnerability = hunt.vulnerability if hunt else 0.0
        confidence = overall_confidence(hypotheses, vulnerability)
        score = round(confidence * 100, 1)
        verdict = verdict_for(score, request.confidence_threshold, request.reject_threshold)

        result = SynthesisResult(
            verdict=verdict,
            overall_confidence=confidence,
            confidence_score=score,
            summary="",
            risks=self._risks(hunt),
            recommendations=self._recommendations(request),
            transcripts=transcripts,
        )
        await self._narrative(request, hypotheses, result, context)

        logger.info(
            "Synthesis for %s: verdict=%s score=%.1f (vulnerability %.2f)",
            context.engagement_id, verdict, score, vulnerability,
        )
        return result

    async def ingest_transcript(
        self, transcript: ExpertTranscript, thesis: str, context: WorkerContext
    ) -> TranscriptOutcome:
        """
        Store a transcript as expert evidence; repeats report `duplicate_of`.

        A transcript without hypothesis ids is linked to every hypothesis in
        the tree. A repeat that names hypotheses the stored copy is not yet
        linked to updates only those.
        """
        if transcript.hypothesis_ids:
            targets = {}
            for hypothesis_id in transcript.hypothesis_ids:
                node = await context.memory.get_hypothesis(hypothesis_id)
                if node is not None:
                    targets[hypothesis_id] = node
            hypothesis_ids = list(dict.fromkeys(transcript.hypothesis_ids))
        else:
            targets = {node.id: node for node in await context.memory.list_hypotheses()}
            hypothesis_ids = list(targets)

        embedding: list[float] | None = None
        try:
            embedding = list(await context.capabilities.embedder.embed(transcript.content))
        except Exception as exc:
            logger.warning("Transcript embedding failed: %s", exc)

        credibility = score_credibility(
            SourceMetadata(
                title=transcript.expert_name,
                author=transcript.expert_name,
                publication_type=PublicationType.EXPERT_INTERVIEW,
            ),
            transcript.content,
        )
        evidence = EvidenceNode.create(
            context.engagement_id,
            transcript.content,
            EvidenceSource(
                type=EvidenceSourceType.EXPERT,
                title=f"Expert call: {transcript.expert_name or transcript.call_id or 'unknown'}",
                credibility_score=credibility,
            ),
            sentiment=await classify_sentiment(transcript.content, thesis, context),
            relevance=EvidenceRelevance(
                hypothesis_ids=hypothesis_ids,
                relevance_scores=[
                    relevance_score(embedding, targets.get(hid)) for hid in hypothesis_ids
                ],
            ),
            tags=["expert"] + ([f"call:{transcript.call_id}"] if transcript.call_id else []),
            embedding=embedding,
        )

        write = await context.memory.add_evidence(evidence)
        stored = write.evidence
        if write.created:
            await context.repositories.secondary.replicate(
                f"evidence.create:{stored.id}",
                functools.partial(context.repositories.evidence.create, stored),
            )
            counted = stored
        else:
            logger.info("Transcript already stored as evidence %s", write.duplicate_of)
            if not write.new_links:
                return TranscriptOutcome(evidence_id=stored.id, duplicate_of=write.duplicate_of)
            await context.repositories.secondary.replicate(
                f"evidence.update:{stored.id}",
                functools.partial(context.repositories.evidence.update, stored),
            )
            counted = stored.model_copy(
                update={"relevance": stored.relevance.restricted_to(write.new_links)}
            )

        context.emit_event(
            EngagementEventType.EVIDENCE_NEW,
            {
                "evidence_id": stored.id,
                "source_type": EvidenceSourceType.EXPERT.value,
                "sentiment": stored.sentiment.value,
                "credibility": stored.source.credibility_score,
                "hypothesis_ids": write.new_links,
            },
            self.worker_id,
        )
        await apply_confidence_updates(context, write.new_links, [counted], self.worker_id)
        return TranscriptOutcome(evidence_id=stored.id, duplicate_of=write.duplicate_of)

    # -----------------------------------------------------------------------

    @staticmethod
    def _risks(hunt: HuntResult | None) -> list[str]:
        if hunt is None:
            return []
        risks = [c.description for c in hunt.contradictions if c.severity == Severity.HIGH]
        risks.extend(
            f"{r.category}: {r.description}" for r in hunt.risk_factors
            if r.severity != Severity.LOW
        )
        return list(dict.fromkeys(risks))[:10]

    @staticmethod
    def _recommendations(request: SynthesisRequest) -> list[str]:
        recommendations = [f"Investigate: {q}" for q in request.key_questions[:2]]
        if request.comparables:
            recommendations.extend(request.comparables.recommendations[:2])
        if request.contradictions:
            recommendations.extend(
                f"Mitigate risk: {r.description}"
                for r in request.contradictions.risk_factors
                if r.severity == Severity.HIGH
            )
        return recommendations[:10]

    @staticmethod
    async def _narrative(
        request: SynthesisRequest,
        hypotheses: list[HypothesisNode],
        result: SynthesisResult,
        context: WorkerContext,
    ) -> None:
        supported = [h for h in hypotheses if h.status == HypothesisStatus.SUPPORTED]
        challenged = [h for h in hypotheses if h.status == HypothesisStatus.CHALLENGED]
        result.key_findings = [f"Supported: {h.content}" for h in supported[:5]] + [
            f"Challenged: {h.content}" for h in challenged[:5]
        ]
        result.summary = (
            f"Research completed with {result.confidence_score:.1f}% confidence "
            f"({len(supported)} supported, {len(challenged)} challenged of "
            f"{len(hypotheses)} hypotheses). Verdict: {result.verdict}."
        )

        hunt = request.contradictions
        comparables = request.comparables
        prompt = SUMMARY_PROMPT.format(
            thesis=request.thesis,
            verdict=result.verdict,
            score=result.confidence_score,
            hypotheses=truncate_tokens(
                "\n".join(
                    f"- ({h.type.value}, {h.status.value}, {h.confidence:.2f}) {h.content}"
                    for h in hypotheses
                ),
                2000,
            ),
            contradictions=truncate_tokens(
                "\n".join(f"- [{c.severity.value}] {c.description}" for c in hunt.contradictions)
                if hunt and hunt.contradictions else "- none",
                1500,
            ),
            comparables=(
                f"{len(comparables.comparable_deals)} deals, pattern "
                f"'{comparables.identified_pattern}', historical success "
                f"{comparables.historical_success_rate:.0%}"
                if comparables else "not searched"
            ),
        )
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(context.llm, prompt)
        except Exception as exc:
            logger.warning("Summary generation failed, using template: %s", exc)
            return
        if not isinstance(parsed, dict):
            return

        if parsed.get("summary"):
            result.summary = str(parsed["summary"])
        findings = [str(f) for f in parsed.get("key_findings") or [] if str(f).strip()]
        if findings:
            result.key_findings = findings
        result.opportunities = [str(o) for o in parsed.get("opportunities") or [] if str(o).strip()]
