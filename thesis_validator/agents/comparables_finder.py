# =============================================================================
# Comparables Finder — Analogous Deals & Historical Patterns
# =============================================================================
#
# Matches the thesis against the shared deal-pattern collection
# (institutional memory) and asks the LLM to name the thesis pattern:
#
#   thesis + sector ──embed──▶ search_deal_patterns(top_k, sector)
#                   ──LLM────▶ {identified_pattern, common_pitfalls,
#                               success_factors, applicable_frameworks,
#                               historical_success_rate}
#
# Historical success rate: mean outcome_score of the matched deals when
# any were found, else the LLM estimate, else 0.5.
#
# Failure to find anything is not an error. The phase reports zero
# comparables and the run continues.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.agents.base import WorkerContext, WorkerId
from thesis_validator.models.events import EngagementEventType
from thesis_validator.services.llm import complete_json, truncate_tokens

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_RATE = 0.5

PATTERN_PROMPT = """Analyze this investment thesis and identify the underlying pattern.

THESIS: "{thesis}"
{sector}
Identify the core thesis pattern (e.g. "market consolidation play", "category
leader in growing market", "operational turnaround"), common pitfalls, the
success factors that usually drive outcomes, analytical frameworks that apply,
and an estimate of the historical success rate.

Return JSON:
{{
  "identified_pattern": "...",
  "common_pitfalls": ["..."],
  "success_factors": ["..."],
  "applicable_frameworks": [{{"name": "...", "description": "..."}}],
  "historical_success_rate": 0.0-1.0
}}"""

RECOMMENDATION_PROMPT = """Based on this comparables analysis, give 3-5 actionable diligence
recommendations.

PATTERN: {pattern}
HISTORICAL SUCCESS RATE: {rate:.0%}

COMMON PITFALLS:
{pitfalls}

KEY FACTORS FROM SUCCESSFUL DEALS:
{factors}

WARNINGS FROM FAILED DEALS:
{warnings}

Return a JSON array of strings."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ComparablesRequest:
    thesis: str
    sector: str | None = None
    target_company: str | None = None
    max_results: int = 10


@dataclass
class ComparableDeal:
    id: str
    similarity: float
    pattern_type: str
    sector: str | None
    outcome: str
    outcome_score: float
    key_factors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: str = ""


@dataclass
class Framework:
    name: str
    description: str = ""


@dataclass
class ComparablesResult:
    comparable_deals: list[ComparableDeal] = field(default_factory=list)
    applicable_frameworks: list[Framework] = field(default_factory=list)
    identified_pattern: str = "Unknown pattern"
    common_pitfalls: list[str] = field(default_factory=list)
    success_factors: list[str] = field(default_factory=list)
    historical_success_rate: float = DEFAULT_SUCCESS_RATE
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class ComparablesFinder:
    worker_id = WorkerId.COMPARABLES_FINDER

    async def execute(
        self, request: ComparablesRequest, context: WorkerContext
    ) -> ComparablesResult:
        context.raise_if_cancelled("comparables search")
        context.emit_event(
            EngagementEventType.AGENT_STATUS,
            {"status": "searching", "message": "Finding comparable deals"},
            self.worker_id,
        )

        result = ComparablesResult()
        result.comparable_deals = await self._find_deals(request, context)
        await self._analyze_pattern(request, context, result)

        if result.comparable_deals:
            result.historical_success_rate = round(
                sum(d.outcome_score for d in result.comparable_deals)
                / len(result.comparable_deals),
                4,
            )
        result.recommendations = await self._recommendations(result, context)

        context.emit_event(
            EngagementEventType.RESEARCH_PROGRESS,
            {
                "step": "comparables_search",
                "comparable_count": len(result.comparable_deals),
                "framework_count": len(result.applicable_frameworks),
                "historical_success_rate": result.historical_success_rate,
            },
            self.worker_id,
        )
        logger.info(
            "Found %d comparable deals for %s (pattern: %s)",
            len(result.comparable_deals), context.engagement_id, result.identified_pattern,
        )
        return result

    async def _find_deals(
        self, request: ComparablesRequest, context: WorkerContext
    ) -> list[ComparableDeal]:
        text = " ".join(p for p in (request.thesis, request.sector, request.target_company) if p)
        try:
            embedding = await context.capabilities.embedder.embed(text)
            hits = await context.memory.search_deal_patterns(
                embedding, request.max_results, request.sector
            )
        except Exception as exc:
            logger.warning("Deal pattern search failed: %s", exc)
            return []

        deals = []
        for hit in hits:
            payload = _json_object(hit.content)
            deals.append(
                ComparableDeal(
                    id=hit.id,
                    similarity=round(hit.score, 4),
                    pattern_type=str(hit.metadata.get("pattern_type") or "unknown"),
                    sector=hit.metadata.get("sector"),
                    outcome=str(hit.metadata.get("outcome") or "unknown"),
                    outcome_score=_as_rate(hit.metadata.get("outcome_score"), DEFAULT_SUCCESS_RATE),
                    key_factors=list(payload.get("key_factors") or []),
                    warnings=list(payload.get("warnings") or []),
                    summary=str(payload.get("summary") or hit.content[:300]),
                )
            )
        return deals

    @staticmethod
    async def _analyze_pattern(
        request: ComparablesRequest, context: WorkerContext, result: ComparablesResult
    ) -> None:
        prompt = PATTERN_PROMPT.format(
            thesis=truncate_tokens(request.thesis),
            sector=f"SECTOR: {request.sector}\n" if request.sector else "",
        )
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(context.llm, prompt)
        except Exception as exc:
            logger.warning("Thesis pattern analysis failed: %s", exc)
            return
        if not isinstance(parsed, dict):
            return

        result.identified_pattern = str(parsed.get("identified_pattern") or result.identified_pattern)
        result.common_pitfalls = [str(p) for p in parsed.get("common_pitfalls") or []]
        result.success_factors = [str(f) for f in parsed.get("success_factors") or []]
        result.historical_success_rate = _as_rate(
            parsed.get("historical_success_rate"), DEFAULT_SUCCESS_RATE
        )
        for item in parsed.get("applicable_frameworks") or []:
            if isinstance(item, dict) and item.get("name"):
                result.applicable_frameworks.append(
                    Framework(name=str(item["name"]), description=str(item.get("description") or ""))
                )
            elif isinstance(item, str) and item.strip():
                result.applicable_frameworks.append(Framework(name=item.strip()))

    @staticmethod
    async def _recommendations(result: ComparablesResult, context: WorkerContext) -> list[str]:
        factors = [f for d in result.comparable_deals if d.outcome == "success" for f in d.key_factors]
        warnings = [w for d in result.comparable_deals if d.outcome == "failed" for w in d.warnings]
        fallback = [f"Diligence pitfall: {p}" for p in result.common_pitfalls[:3]] + [
            f"Learn from failed comparable: {w}" for w in warnings[:2]
        ]

        if not (result.comparable_deals or result.common_pitfalls):
            return fallback
        prompt = RECOMMENDATION_PROMPT.format(
            pattern=result.identified_pattern,
            rate=result.historical_success_rate,
            pitfalls="\n".join(f"- {p}" for p in result.common_pitfalls) or "- none",
            factors="\n".join(f"- {f}" for f in factors[:5]) or "- none",
            warnings="\n".join(f"- {w}" for w in warnings[:5]) or "- none",
        )
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(context.llm, prompt)
        except Exception as exc:
            logger.warning("Comparables recommendations failed: %s", exc)
            return fallback
        if not isinstance(parsed, list):
            return fallback
        return [str(r) for r in parsed if str(r).strip()] or fallback


def _json_object(text: str) -> dict[str, Any]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _as_rate(value: Any, default: float) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        return default
