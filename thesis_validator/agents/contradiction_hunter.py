# =============================================================================
# Contradiction Hunter — Adversarial Search for Disconfirming Evidence
# =============================================================================
#
# For every hypothesis under test:
#   1. Generate adversarial queries (light 3 / moderate 5 / aggressive 8)
#   2. Search the web (3 / 5 / 10 results per query), plus reuse already
#      gathered evidence that was classified as contradicting
#   3. Ask the LLM whether each candidate really contradicts the claim
#      → {is_contradiction, severity, explanation, bear_case_theme}
#   4. Keep candidates at or above min_severity, persist them as
#      ContradictionNodes and emit contradiction.found
#
# After the sweep, bear-case themes and categorised risk factors are
# derived from the findings, and an overall vulnerability is computed:
#
#   vulnerability = min(1, 0.6 × mean(contradiction weight)
#                         + 0.4 × mean(risk factor weight))
#
# Severity weights: low 0.2, medium 0.5, high 0.9.
#
# The hunter never changes hypothesis confidence. Findings feed the
# synthesizer (research) or the scenario projection (stress test).
# =============================================================================

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.agents.base import WorkerContext, WorkerId
from thesis_validator.errors import ExternalSourceError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.evidence import ContradictionNode, Sentiment, Severity
from thesis_validator.models.hypothesis import HypothesisNode
from thesis_validator.models.jobs import ContradictionIntensity
from thesis_validator.services.llm import complete_json, truncate_tokens

logger = logging.getLogger(__name__)

# Gathered evidence below this credibility is not re-examined.
MIN_CANDIDATE_CREDIBILITY = 0.6


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

ADVERSARIAL_QUERY_PROMPT = """Generate {count} adversarial search queries to find evidence that could
CONTRADICT or CHALLENGE this hypothesis:

HYPOTHESIS: "{hypothesis}"

Look for problems or failures related to the claim, expert opinions that
disagree, historical cases where similar assumptions proved wrong, and
negative news.

Return a JSON array of strings."""

ANALYSIS_PROMPT = """Analyze whether the following evidence contradicts the hypothesis.

HYPOTHESIS: "{hypothesis}"

EVIDENCE: "{evidence}"

Return JSON:
{{
  "is_contradiction": true | false,
  "severity": "low" | "medium" | "high",
  "explanation": "<why this challenges the hypothesis>",
  "bear_case_theme": "<short label for the bear case this supports>"
}}"""

THEMES_PROMPT = """Based on these hypotheses and the contradictions found, generate 3-5
overarching bear case themes that capture why the investment thesis could fail.

HYPOTHESES:
{hypotheses}

CONTRADICTIONS:
{contradictions}

Return a JSON array of strings."""

RISK_PROMPT = """Based on these hypotheses and contradictions, identify the key risk factors.
Use the categories market, competition, execution, financial, regulatory and
technology.

HYPOTHESES:
{hypotheses}

CONTRADICTIONS:
{contradictions}

Return a JSON array:
[{{"category": "...", "description": "...", "severity": "low" | "medium" | "high",
   "mitigation": "..."}}]"""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class HuntRequest:
    """
    Args:
        hypothesis_ids: Hypotheses to attack. None means every hypothesis of
            the engagement.
        max_per_hypothesis: Cap on raised contradictions per hypothesis
            (stress-test mode). None means uncapped.
    """

    hypothesis_ids: list[str] | None = None
    intensity: ContradictionIntensity = ContradictionIntensity.MODERATE
    min_severity: Severity = Severity.MEDIUM
    max_per_hypothesis: int | None = None
    include_gathered: bool = True


@dataclass
class RiskFactor:
    category: str
    description: str
    severity: Severity
    mitigation: str | None = None


@dataclass
class HuntResult:
    contradictions: list[ContradictionNode] = field(default_factory=list)
    bear_case_themes: list[str] = field(default_factory=list)
    risk_factors: list[RiskFactor] = field(default_factory=list)
    vulnerability: float = 0.0
    hypotheses_tested: list[str] = field(default_factory=list)

    def for_hypothesis(self, hypothesis_id: str) -> list[ContradictionNode]:
        return [c for c in self.contradictions if c.hypothesis_id == hypothesis_id]


@dataclass
class _Candidate:
    content: str
    url: str | None = None
    evidence_id: str | None = None


def compute_vulnerability(
    contradictions: list[ContradictionNode], risk_factors: list[RiskFactor]
) -> float:
    if not contradictions and not risk_factors:
        return 0.0
    contradiction_score = sum(c.severity.weight for c in contradictions) / max(
        len(contradictions), 1
    )
    risk_score = sum(r.severity.weight for r in risk_factors) / max(len(risk_factors), 1)
    return round(min(1.0, contradiction_score * 0.6 + risk_score * 0.4), 4)


def parse_severity(value: Any) -> Severity:
    """Accept "low"/"medium"/"high" or a 0-1 score."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Severity.from_score(float(value))
    try:
        return Severity(str(value).lower())
    except ValueError:
        return Severity.LOW


_SEVERITY_ORDER = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class ContradictionHunter:
    """Raises contradictions against hypotheses and scores thesis vulnerability."""

    worker_id = WorkerId.CONTRADICTION_HUNTER

    async def execute(self, request: HuntRequest, context: WorkerContext) -> HuntResult:
        context.raise_if_cancelled("contradiction hunting")
        hypotheses = await self._targets(request, context)
        result = HuntResult(hypotheses_tested=[h.id for h in hypotheses])

        for hypothesis in hypotheses:
            context.raise_if_cancelled("contradiction search")
            context.emit_event(
                EngagementEventType.AGENT_STATUS,
                {"status": "searching", "message": f"Challenging: {hypothesis.content[:80]}"},
                self.worker_id,
            )
            result.contradictions.extend(await self._hunt(hypothesis, request, context))

        if hypotheses:
            result.bear_case_themes = await self._themes(hypotheses, result.contradictions, context)
            result.risk_factors = await self._risk_factors(
                hypotheses, result.contradictions, context
            )
        result.vulnerability = compute_vulnerability(result.contradictions, result.risk_factors)

        logger.info(
            "Contradiction hunt for %s: %d hypotheses, %d contradictions, vulnerability %.2f",
            context.engagement_id, len(hypotheses), len(result.contradictions),
            result.vulnerability,
        )
        return result

    async def _targets(self, request: HuntRequest, context: WorkerContext) -> list[HypothesisNode]:
        if request.hypothesis_ids is None:
            return await context.memory.list_hypotheses()
        targets = []
        for hypothesis_id in request.hypothesis_ids:
            node = await context.memory.get_hypothesis(hypothesis_id)
            if node is None:
                logger.warning("Hypothesis %s not found, not hunting", hypothesis_id)
                continue
            targets.append(node)
        return targets

    # -----------------------------------------------------------------------
    # Per-hypothesis hunt
    # -----------------------------------------------------------------------

    async def _hunt(
        self, hypothesis: HypothesisNode, request: HuntRequest, context: WorkerContext
    ) -> list[ContradictionNode]:
        candidates = await self._search(hypothesis, request.intensity, context)
        if request.include_gathered:
            candidates.extend(await self._gathered(hypothesis, context))

        seen: set[str] = set()
        unique = []
        for candidate in candidates:
            key = candidate.evidence_id or candidate.url or candidate.content[:200]
            if key not in seen:
                seen.add(key)
                unique.append(candidate)

        analyses = await asyncio.gather(
            *(self._analyze(hypothesis, c, context) for c in unique)
        )

        raised: list[ContradictionNode] = []
        for candidate, analysis in zip(unique, analyses):
            if analysis is None:
                continue
            severity, explanation, theme = analysis
            if _SEVERITY_ORDER[severity] < _SEVERITY_ORDER[request.min_severity]:
                continue
            if request.max_per_hypothesis is not None and len(raised) >= request.max_per_hypothesis:
                break

            contradiction = ContradictionNode(
                engagement_id=context.engagement_id,
                hypothesis_id=hypothesis.id,
                evidence_id=candidate.evidence_id,
                description=explanation,
                severity=severity,
                bear_case_theme=theme,
                source_url=candidate.url,
            )
            await context.memory.put_contradiction(contradiction)
            await context.repositories.secondary.replicate(
                f"contradiction.create:{contradiction.id}",
                functools.partial(context.repositories.contradictions.create, contradiction),
            )
            raised.append(contradiction)
            context.emit_event(
                EngagementEventType.CONTRADICTION_FOUND,
                {
                    "contradiction_id": contradiction.id,
                    "hypothesis_id": hypothesis.id,
                    "evidence_id": contradiction.evidence_id,
                    "severity": severity.value,
                    "description": explanation,
                    "bear_case_theme": theme,
                },
                self.worker_id,
            )
        return raised

    async def _search(
        self,
        hypothesis: HypothesisNode,
        intensity: ContradictionIntensity,
        context: WorkerContext,
    ) -> list[_Candidate]:
        search = context.capabilities.search
        if search is None:
            return []

        queries = await self._adversarial_queries(hypothesis.content, intensity, context)
        timeout = context.settings.source_timeout_seconds
        candidates = []
        for query in queries:
            context.raise_if_cancelled("adversarial search")
            try:
                hits = await asyncio.wait_for(
                    search.search(query, max_results=intensity.results_per_query), timeout
                )
            except Exception as exc:
                logger.warning("Skipping query: %s", ExternalSourceError("web", f"{query}: {exc}"))
                continue
            candidates.extend(
                _Candidate(content=hit.content, url=hit.url) for hit in hits if hit.content
            )
        return candidates

    @staticmethod
    async def _gathered(hypothesis: HypothesisNode, context: WorkerContext) -> list[_Candidate]:
        evidence = await context.memory.list_evidence(hypothesis.id)
        return [
            _Candidate(content=e.content, url=e.source.url, evidence_id=e.id)
            for e in evidence
            if e.sentiment == Sentiment.CONTRADICTING
            and e.credibility >= MIN_CANDIDATE_CREDIBILITY
        ]

    @staticmethod
    async def _adversarial_queries(
        hypothesis: str, intensity: ContradictionIntensity, context: WorkerContext
    ) -> list[str]:
        count = intensity.query_count
        fallback = [
            f"{hypothesis} problems",
            f"{hypothesis} risks",
            f"{hypothesis} challenges",
        ]
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(
                    context.llm,
                    ADVERSARIAL_QUERY_PROMPT.format(count=count, hypothesis=hypothesis),
                    temperature=0.5,
                )
        except Exception as exc:
            logger.warning("Adversarial query generation failed: %s", exc)
            parsed = None
        if not isinstance(parsed, list):
            return fallback[:count]
        queries = [q.strip() for q in parsed if isinstance(q, str) and q.strip()]
        return queries[:count] or fallback[:count]

    @staticmethod
    async def _analyze(
        hypothesis: HypothesisNode, candidate: _Candidate, context: WorkerContext
    ) -> tuple[Severity, str, str | None] | None:
        prompt = ANALYSIS_PROMPT.format(
            hypothesis=hypothesis.content, evidence=truncate_tokens(candidate.content, 1500)
        )
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(context.llm, prompt, temperature=0.2)
        except Exception as exc:
            logger.warning("Contradiction analysis failed: %s", exc)
            return None
        if not isinstance(parsed, dict) or not parsed.get("is_contradiction"):
            return None
        explanation = str(parsed.get("explanation") or "").strip() or "Evidence challenges hypothesis"
        theme = parsed.get("bear_case_theme")
        return parse_severity(parsed.get("severity")), explanation, str(theme) if theme else None

    # -----------------------------------------------------------------------
    # Roll-ups
    # -----------------------------------------------------------------------

    @staticmethod
    async def _themes(
        hypotheses: list[HypothesisNode],
        contradictions: list[ContradictionNode],
        context: WorkerContext,
    ) -> list[str]:
        from_findings = list(
            dict.fromkeys(c.bear_case_theme for c in contradictions if c.bear_case_theme)
        )
        if not contradictions:
            return from_findings
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(
                    context.llm,
                    THEMES_PROMPT.format(
                        hypotheses=_bullets(h.content for h in hypotheses),
                        contradictions=_bullets(c.description for c in contradictions),
                    ),
                )
        except Exception as exc:
            logger.warning("Bear case theme generation failed: %s", exc)
            return from_findings
        if not isinstance(parsed, list):
            return from_findings
        themes = [t.strip() for t in parsed if isinstance(t, str) and t.strip()]
        return themes or from_findings

    @staticmethod
    async def _risk_factors(
        hypotheses: list[HypothesisNode],
        contradictions: list[ContradictionNode],
        context: WorkerContext,
    ) -> list[RiskFactor]:
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(
                    context.llm,
                    RISK_PROMPT.format(
                        hypotheses=_bullets(h.content for h in hypotheses),
                        contradictions=_bullets(
                            f"{c.description} (severity: {c.severity.value})"
                            for c in contradictions
                        ) or "- none found",
                    ),
                )
        except Exception as exc:
            logger.warning("Risk factor identification failed: %s", exc)
            return []
        if not isinstance(parsed, list):
            return []
        factors = []
        for item in parsed:
            if not isinstance(item, dict) or not item.get("description"):
                continue
            factors.append(
                RiskFactor(
                    category=str(item.get("category") or "general"),
                    description=str(item["description"]),
                    severity=parse_severity(item.get("severity")),
                    mitigation=item.get("mitigation") or None,
                )
            )
        return factors


def _bullets(lines) -> str:
    return truncate_tokens("\n".join(f"- {line}" for line in lines))
