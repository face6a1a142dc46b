# =============================================================================
# Evidence Gatherer — Multi-Source Research & Confidence Updates
# =============================================================================
#
# Collects evidence for one research query and folds it into the
# confidence of the hypotheses it targets.
#
# PIPELINE:
#   1. Query variants      LLM JSON array, templated fallback
#   2. Source fan-out      web / documents / market_intel / financial,
#                          concurrently, each under its own timeout; a
#                          failing source is logged and skipped
#   3. Dedup               by URL, symbol + data type, or chunk id
#   4. Credibility         services/scoring.py; items below
#                          min_credibility are dropped
#   5. Sentiment           LLM classification (< 50 chars → neutral,
#                          failure → neutral)
#   6. Relevance           cosine(evidence, hypothesis) per target
#   7. Persist             deal memory first, PostgreSQL best-effort; a
#                          record already stored for another hypothesis
#                          is linked to this one and counted for it only
#   8. Confidence update   credibility-weighted, per-hypothesis lock
#
# index_document() feeds the documents source: DocumentParser chunks are
# embedded and stored in the engagement's document collection.
#
# CONFIDENCE UPDATE (per target hypothesis, over this batch):
#   total   = Σ credibility of all items
#   support = Σ credibility of supporting items / total
#   contra  = Σ credibility of contradicting items / total
#   delta   = (support − contra) × confidence_max_step
#   new     = clamp(confidence + delta, 0, 1)
#
#   untested  → supported   support > contra and support weight > 0
#   untested  → challenged  contra > support and contra weight > 0
#   supported → challenged  contra > confidence_flip_threshold
#
# Zero total weight skips the hypothesis. Nothing is written or emitted
# unless confidence or status actually changed.
# =============================================================================

from __future__ import annotations

import asyncio
import functools
import logging
import math
import uuid
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from thesis_validator.agents.base import WorkerContext, WorkerId
from thesis_validator.config import settings
from thesis_validator.errors import ExternalSourceError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.evidence import (
    EvidenceNode,
    EvidenceRelevance,
    EvidenceSource,
    EvidenceSourceType,
    Sentiment,
)
from thesis_validator.models.hypothesis import HypothesisNode, HypothesisStatus
from thesis_validator.services.llm import complete_json, truncate_tokens
from thesis_validator.services.scoring import (
    PublicationType,
    SourceMetadata,
    cosine_similarity,
    score_credibility,
)

logger = logging.getLogger(__name__)

MIN_SENTIMENT_LENGTH = 50
DEFAULT_RELEVANCE = 0.5

_QUERY_SUFFIXES = ["market size", "competitive landscape", "risks", "recent developments"]

SOURCE_TYPES: dict[str, EvidenceSourceType] = {
    "web": EvidenceSourceType.WEB,
    "documents": EvidenceSourceType.DOCUMENT,
    "market_intel": EvidenceSourceType.MARKET_INTEL,
    "financial": EvidenceSourceType.FINANCIAL,
}


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

QUERY_PROMPT = """Generate {count} web search queries to research the following topic for
investment due diligence. Cover market size, competitive landscape, risks and
recent developments.

TOPIC: {query}

Return a JSON array of strings."""

SENTIMENT_PROMPT = """Classify the sentiment of this text as it relates to the business thesis.

THESIS: {thesis}

TEXT: {content}

Answer with exactly one word: supporting, neutral, or contradicting."""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class GatherRequest:
    """
    One gathering run.

    `hypothesis_ids` are the hypotheses the evidence is linked to and whose
    confidence it updates. An empty list still gathers and stores evidence.
    """

    query: str
    hypothesis_ids: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=lambda: list(SOURCE_TYPES))
    max_results: int = field(default_factory=lambda: settings.default_max_results)
    min_credibility: float = field(default_factory=lambda: settings.default_min_credibility)
    symbols: list[str] = field(default_factory=list)


@dataclass
class GatherResult:
    evidence: list[EvidenceNode] = field(default_factory=list)
    search_queries: list[str] = field(default_factory=list)
    source_summary: dict[str, int] = field(default_factory=dict)
    duplicates: int = 0
    updated_hypotheses: list[str] = field(default_factory=list)
    linked: list[EvidenceNode] = field(default_factory=list)


@dataclass
class RawItem:
    """Source output before scoring. `key` is the dedup identity."""

    key: str
    source_type: EvidenceSourceType
    content: str
    title: str | None = None
    url: str | None = None
    metadata: SourceMetadata = field(default_factory=SourceMetadata)
    credibility: float | None = None
    sentiment: Sentiment | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class ConfidenceChange:
    hypothesis_id: str
    previous_confidence: float
    confidence: float
    previous_status: HypothesisStatus
    status: HypothesisStatus
    support_ratio: float
    contradict_ratio: float


# ---------------------------------------------------------------------------
# Confidence Update (pure)
# ---------------------------------------------------------------------------


def compute_confidence_update(
    hypothesis: HypothesisNode,
    weighted: Iterable[tuple[Sentiment, float]],
    max_step: float,
    flip_threshold: float,
) -> ConfidenceChange | None:
    """
    Apply one batch of (sentiment, credibility) pairs to a hypothesis.

    Returns:
        The change, or None when the batch carries no weight or leaves both
        confidence and status untouched.
    """
    support = contradict = total = 0.0
    for sentiment, weight in weighted:
        total += weight
        if sentiment == Sentiment.SUPPORTING:
            support += weight
        elif sentiment == Sentiment.CONTRADICTING:
            contradict += weight
    if total <= 0:
        return None

    support_ratio = support / total
    contradict_ratio = contradict / total
    delta = (support_ratio - contradict_ratio) * max_step
    confidence = min(max(hypothesis.confidence + delta, 0.0), 1.0)

    status = hypothesis.status
    if status == HypothesisStatus.UNTESTED:
        if support_ratio > contradict_ratio and support > 0:
            status = HypothesisStatus.SUPPORTED
        elif contradict_ratio > support_ratio and contradict > 0:
            status = HypothesisStatus.CHALLENGED
    elif status == HypothesisStatus.SUPPORTED and contradict_ratio > flip_threshold:
        status = HypothesisStatus.CHALLENGED

    if math.isclose(confidence, hypothesis.confidence, abs_tol=1e-9) and status == hypothesis.status:
        return None
    return ConfidenceChange(
        hypothesis_id=hypothesis.id,
        previous_confidence=hypothesis.confidence,
        confidence=confidence,
        previous_status=hypothesis.status,
        status=status,
        support_ratio=support_ratio,
        contradict_ratio=contradict_ratio,
    )


async def apply_confidence_updates(
    context: WorkerContext,
    hypothesis_ids: Iterable[str],
    evidence: list[EvidenceNode],
    agent: WorkerId = WorkerId.EVIDENCE_GATHERER,
) -> list[ConfidenceChange]:
    """
    Read-modify-write each hypothesis under its own lock.

    The change is committed to deal memory, replicated to PostgreSQL and
    announced with hypothesis.updated. Unknown hypotheses are skipped.
    """
    policy = context.settings
    changes: list[ConfidenceChange] = []
    for hypothesis_id in dict.fromkeys(hypothesis_ids):
        linked = [e for e in evidence if hypothesis_id in e.relevance.hypothesis_ids]
        if not linked:
            continue

        async with context.locks(hypothesis_id):
            hypothesis = await context.memory.get_hypothesis(hypothesis_id)
            if hypothesis is None:
                logger.warning("Skipping confidence update for unknown hypothesis %s", hypothesis_id)
                continue

            change = compute_confidence_update(
                hypothesis,
                [(e.sentiment, e.credibility) for e in linked],
                policy.confidence_max_step,
                policy.confidence_flip_threshold,
            )
            if change is None:
                continue

            updated = hypothesis.model_copy(
                update={
                    "confidence": change.confidence,
                    "status": change.status,
                    "updated_at": datetime.now(UTC),
                }
            )
            await context.memory.put_hypothesis(updated)
            await context.repositories.secondary.replicate(
                f"hypothesis.update:{updated.id}",
                functools.partial(context.repositories.hypotheses.update, updated),
            )

        changes.append(change)
        context.emit_event(
            EngagementEventType.HYPOTHESIS_UPDATED,
            {
                "hypothesis_id": change.hypothesis_id,
                "previous_confidence": round(change.previous_confidence, 4),
                "confidence": round(change.confidence, 4),
                "previous_status": change.previous_status.value,
                "status": change.status.value,
                "evidence_count": len(linked),
            },
            agent,
        )
    return changes


async def index_document(
    context: WorkerContext,
    data: bytes,
    mime_type: str,
    filename: str,
    document_id: str | None = None,
) -> int:
    """
    Parse a data-room document and index its chunks for the documents source.

    Returns the number of chunks indexed. Without a configured document
    parser nothing is indexed and 0 is returned.

    Raises:
        ExternalSourceError: The parser or the embedder failed.
    """
    parser = context.capabilities.documents
    if parser is None:
        logger.warning("No document parser configured; %s not indexed", filename)
        return 0
    try:
        chunks = [c for c in await parser.parse(data, mime_type) if c.content.strip()]
        if not chunks:
            logger.info("No text extracted from %s", filename)
            return 0
        contents = [c.content for c in chunks]
        embeddings = await context.capabilities.embedder.embed_many(contents)
    except Exception as exc:
        raise ExternalSourceError("documents", f"Could not index {filename}: {exc}") from exc

    return await context.memory.add_document_chunks(
        document_id or str(uuid.uuid4()), filename, contents, [list(e) for e in embeddings]
    )


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class EvidenceGatherer:
    """Runs the gathering pipeline for one query."""

    worker_id = WorkerId.EVIDENCE_GATHERER

    async def execute(self, request: GatherRequest, context: WorkerContext) -> GatherResult:
        context.raise_if_cancelled("evidence gathering")
        context.emit_event(
            EngagementEventType.AGENT_STATUS,
            {"status": "searching", "message": f"Gathering evidence: {request.query[:80]}"},
            self.worker_id,
        )

        queries = await self._query_variants(request.query, context)

        context.raise_if_cancelled("source search")
        raw = await self._search_sources(request, queries, context)
        items = _dedupe(raw)

        scored = self._score(items, request.min_credibility)
        scored = scored[: request.max_results]

        targets = await self._load_targets(request.hypothesis_ids, context)
        await self._classify(scored, request.query, context)

        result = GatherResult(search_queries=queries)
        # Evidence counted toward each hypothesis's update: new records, plus
        # stored records narrowed to the links this run added.
        batch: list[EvidenceNode] = []
        for item in scored:
            evidence = await self._build_evidence(item, targets, request.hypothesis_ids, context)
            write = await context.memory.add_evidence(evidence)
            stored = write.evidence
            if not write.created:
                result.duplicates += 1
                if not write.new_links:
                    logger.debug("Evidence %s already stored", write.duplicate_of)
                    continue
                await context.repositories.secondary.replicate(
                    f"evidence.update:{stored.id}",
                    functools.partial(context.repositories.evidence.update, stored),
                )
                result.linked.append(stored)
                batch.append(
                    stored.model_copy(
                        update={"relevance": stored.relevance.restricted_to(write.new_links)}
                    )
                )
                self._announce(stored, write.new_links, context)
                continue

            await context.repositories.secondary.replicate(
                f"evidence.create:{stored.id}",
                functools.partial(context.repositories.evidence.create, stored),
            )
            result.evidence.append(stored)
            batch.append(stored)
            key = stored.source.type.value
            result.source_summary[key] = result.source_summary.get(key, 0) + 1
            self._announce(stored, stored.relevance.hypothesis_ids, context)

        changes = await apply_confidence_updates(
            context, request.hypothesis_ids, batch, self.worker_id
        )
        result.updated_hypotheses = [c.hypothesis_id for c in changes]

        logger.info(
            "Gathered %d new evidence items (%d duplicates, %d newly linked) for '%s': %s",
            len(result.evidence), result.duplicates, len(result.linked),
            request.query[:60], result.source_summary,
        )
        return result

    def _announce(
        self, evidence: EvidenceNode, hypothesis_ids: list[str], context: WorkerContext
    ) -> None:
        context.emit_event(
            EngagementEventType.EVIDENCE_NEW,
            {
                "evidence_id": evidence.id,
                "source_type": evidence.source.type.value,
                "title": evidence.source.title,
                "url": evidence.source.url,
                "sentiment": evidence.sentiment.value,
                "credibility": evidence.credibility,
                "hypothesis_ids": list(hypothesis_ids),
            },
            self.worker_id,
        )

    # -----------------------------------------------------------------------
    # Query expansion
    # -----------------------------------------------------------------------

    async def _query_variants(self, query: str, context: WorkerContext) -> list[str]:
        fallback = [query] + [f"{query} {suffix}" for suffix in _QUERY_SUFFIXES]
        try:
            async with context.llm_semaphore:
                parsed = await complete_json(
                    context.llm, QUERY_PROMPT.format(count=len(fallback), query=query)
                )
        except Exception as exc:
            logger.warning("Query expansion failed, using templates: %s", exc)
            return fallback

        if not isinstance(parsed, list):
            return fallback
        variants = [str(q).strip() for q in parsed if isinstance(q, str) and q.strip()]
        if not variants:
            return fallback
        return list(dict.fromkeys([query] + variants))[: len(fallback)]

    # -----------------------------------------------------------------------
    # Source fan-out
    # -----------------------------------------------------------------------

    async def _search_sources(
        self, request: GatherRequest, queries: list[str], context: WorkerContext
    ) -> list[RawItem]:
        searches: dict[str, Callable[[], Awaitable[list[RawItem]]]] = {
            "web": lambda: self._search_web(queries, request.max_results, context),
            "documents": lambda: self._search_documents(request.query, request.max_results, context),
            "market_intel": lambda: self._search_market(request.query, request.max_results, context),
            "financial": lambda: self._search_financial(request.query, request.symbols, context),
        }
        enabled = [s for s in request.sources if s in searches]
        unknown = set(request.sources) - set(searches)
        if unknown:
            logger.warning("Ignoring unknown evidence sources: %s", sorted(unknown))

        timeout = context.settings.source_timeout_seconds
        outcomes = await asyncio.gather(
            *(asyncio.wait_for(searches[name](), timeout) for name in enabled),
            return_exceptions=True,
        )

        items: list[RawItem] = []
        for name, outcome in zip(enabled, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                error = ExternalSourceError(name, str(outcome) or type(outcome).__name__)
                logger.warning("Skipping source: %s", error)
                continue
            items.extend(outcome)
        return items

    async def _search_web(
        self, queries: list[str], max_results: int, context: WorkerContext
    ) -> list[RawItem]:
        search = context.capabilities.search
        if search is None:
            logger.warning("Web search requested but no search provider is configured")
            return []

        per_query = max(1, math.ceil(max_results / max(len(queries), 1)))
        items: list[RawItem] = []
        for query in queries:
            context.raise_if_cancelled("web search")
            for hit in await search.search(query, max_results=per_query):
                if not hit.content:
                    continue
                items.append(
                    RawItem(
                        key=f"url:{hit.url}",
                        source_type=EvidenceSourceType.WEB,
                        content=hit.content,
                        title=hit.title,
                        url=hit.url,
                        metadata=SourceMetadata(
                            url=hit.url,
                            title=hit.title,
                            author=hit.author,
                            published_at=hit.published_at,
                        ),
                        tags=["web"],
                    )
                )
        return items

    async def _search_documents(
        self, query: str, max_results: int, context: WorkerContext
    ) -> list[RawItem]:
        embedding = await context.capabilities.embedder.embed(query)
        hits = await context.memory.search_documents(embedding, max_results)
        items = []
        for hit in hits:
            filename = hit.metadata.get("filename")
            items.append(
                RawItem(
                    key=f"chunk:{hit.id}",
                    source_type=EvidenceSourceType.DOCUMENT,
                    content=hit.content,
                    title=filename or "Data room document",
                    metadata=SourceMetadata(filename=filename, is_internal=True),
                    tags=["document"],
                )
            )
        return items

    async def _search_market(
        self, query: str, max_results: int, context: WorkerContext
    ) -> list[RawItem]:
        embedding = await context.capabilities.embedder.embed(query)
        hits = await context.memory.search_market_signals(embedding, max_results)
        items = []
        for hit in hits:
            url = hit.metadata.get("url")
            credibility = hit.metadata.get("credibility")
            items.append(
                RawItem(
                    key=f"url:{url}" if url else f"signal:{hit.id}",
                    source_type=EvidenceSourceType.MARKET_INTEL,
                    content=hit.content,
                    title=hit.metadata.get("title") or "Market signal",
                    url=url,
                    metadata=SourceMetadata(
                        url=url, publication_type=PublicationType.MARKET_DATA
                    ),
                    credibility=float(credibility) if credibility is not None else None,
                    tags=["market_intel"],
                )
            )
        return items

    async def _search_financial(
        self, query: str, symbols: list[str], context: WorkerContext
    ) -> list[RawItem]:
        feed = context.capabilities.financial
        if feed is None:
            logger.warning("Financial data requested but no provider is configured")
            return []

        records = []
        for symbol in symbols:
            context.raise_if_cancelled("financial data")
            records.extend(await feed.quote(symbol))
            records.extend(await feed.fundamentals(symbol))
        records.extend(await feed.news(query))

        items = []
        for record in records:
            if record.data_type == "news" and record.url:
                key = f"url:{record.url}"
            else:
                key = f"fin:{record.symbol}:{record.data_type}"
            items.append(
                RawItem(
                    key=key,
                    source_type=EvidenceSourceType.FINANCIAL,
                    content=record.content,
                    title=record.title,
                    url=record.url,
                    metadata=SourceMetadata(
                        url=record.url,
                        title=record.title,
                        published_at=record.published_at,
                        publication_type=(
                            None if record.data_type == "news" else PublicationType.MARKET_DATA
                        ),
                    ),
                    credibility=record.credibility,
                    sentiment=_as_sentiment(record.sentiment),
                    tags=["financial", record.data_type],
                )
            )
        return items

    # -----------------------------------------------------------------------
    # Scoring & classification
    # -----------------------------------------------------------------------

    @staticmethod
    def _score(items: list[RawItem], min_credibility: float) -> list[tuple[RawItem, float]]:
        scored = []
        for item in items:
            credibility = item.credibility
            if credibility is None:
                credibility = score_credibility(item.metadata, item.content)
            credibility = min(max(credibility, 0.0), 1.0)
            if credibility < min_credibility:
                continue
            scored.append((item, credibility))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    async def _classify(
        self, scored: list[tuple[RawItem, float]], thesis: str, context: WorkerContext
    ) -> None:
        pending = [item for item, _ in scored if item.sentiment is None]
        sentiments = await asyncio.gather(
            *(classify_sentiment(item.content, thesis, context) for item in pending)
        )
        for item, sentiment in zip(pending, sentiments):
            item.sentiment = sentiment

    @staticmethod
    async def _load_targets(
        hypothesis_ids: list[str], context: WorkerContext
    ) -> dict[str, HypothesisNode]:
        targets = {}
        for hypothesis_id in hypothesis_ids:
            node = await context.memory.get_hypothesis(hypothesis_id)
            if node is not None:
                targets[hypothesis_id] = node
        return targets

    @staticmethod
    async def _build_evidence(
        pair: tuple[RawItem, float],
        targets: dict[str, HypothesisNode],
        hypothesis_ids: list[str],
        context: WorkerContext,
    ) -> EvidenceNode:
        item, credibility = pair
        embedding: list[float] | None = None
        try:
            embedding = list(await context.capabilities.embedder.embed(item.content))
        except Exception as exc:
            logger.warning("Evidence embedding failed: %s", exc)

        scores = [
            relevance_score(embedding, targets.get(hypothesis_id))
            for hypothesis_id in hypothesis_ids
        ]
        return EvidenceNode.create(
            context.engagement_id,
            item.content,
            EvidenceSource(
                type=item.source_type,
                url=item.url,
                title=item.title,
                credibility_score=credibility,
            ),
            sentiment=item.sentiment or Sentiment.NEUTRAL,
            relevance=EvidenceRelevance(
                hypothesis_ids=list(hypothesis_ids), relevance_scores=scores
            ),
            tags=item.tags,
            embedding=embedding,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def classify_sentiment(content: str, thesis: str, context: WorkerContext) -> Sentiment:
    """LLM sentiment relative to `thesis`. Short text and failures are neutral."""
    if len(content.strip()) < MIN_SENTIMENT_LENGTH:
        return Sentiment.NEUTRAL
    prompt = SENTIMENT_PROMPT.format(thesis=thesis, content=truncate_tokens(content, 1500))
    try:
        async with context.llm_semaphore:
            response = await context.llm.complete(
                messages=[{"role": "user", "content": prompt}],
                temperature=0.0,
                max_tokens=10,
            )
    except Exception as exc:
        logger.warning("Sentiment classification failed, defaulting to neutral: %s", exc)
        return Sentiment.NEUTRAL

    answer = response.content.strip().lower()
    if "contradicting" in answer:
        return Sentiment.CONTRADICTING
    if "supporting" in answer:
        return Sentiment.SUPPORTING
    return Sentiment.NEUTRAL


def relevance_score(embedding: list[float] | None, hypothesis: HypothesisNode | None) -> float:
    """
    Cosine relevance of evidence to a hypothesis.

    0.0 for an unknown hypothesis, 0.5 when either embedding is missing.
    """
    if hypothesis is None:
        return 0.0
    if not embedding or not hypothesis.embedding:
        return DEFAULT_RELEVANCE
    try:
        return round(cosine_similarity(embedding, hypothesis.embedding), 4)
    except ValueError:
        logger.warning("Embedding size mismatch for hypothesis %s", hypothesis.id)
        return DEFAULT_RELEVANCE


def _as_sentiment(value: str | None) -> Sentiment | None:
    if value is None:
        return None
    try:
        return Sentiment(value.lower())
    except ValueError:
        return None


def _dedupe(items: list[RawItem]) -> list[RawItem]:
    seen: dict[str, RawItem] = {}
    for item in items:
        seen.setdefault(item.key, item)
    return list(seen.values())
