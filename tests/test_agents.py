# =============================================================================
# Unit Tests — Research Workers
# =============================================================================
#
# Tests every worker against in-memory fakes (tests/fakes.py): no API keys,
# no ChromaDB, no PostgreSQL. The FakeLLM answers by prompt; unmatched
# prompts get an empty reply, which drives each worker's fallback path.
#
# Test groups:
#   1. LLM helpers (parse_json, truncate_tokens)
#   2. Hypothesis Builder
#   3. Evidence Gatherer
#   4. Contradiction Hunter
#   5. Comparables Finder
#   6. Synthesizer
# =============================================================================

from __future__ import annotations

import asyncio
import json
import re

import pytest
from fakes import (
    THESIS,
    FakeEmbedder,
    FakeFinancial,
    FakeLLM,
    FakeParser,
    FakeSearch,
    InMemoryDealMemory,
    make_context,
    make_repositories,
    sentiment_by_keyword,
    web_result,
)

from thesis_validator.agents.comparables_finder import ComparablesFinder, ComparablesRequest
from thesis_validator.agents.contradiction_hunter import (
    ContradictionHunter,
    HuntRequest,
    HuntResult,
    RiskFactor,
    compute_vulnerability,
    parse_severity,
)
from thesis_validator.agents.evidence_gatherer import (
    EvidenceGatherer,
    GatherRequest,
    classify_sentiment,
    index_document,
    relevance_score,
)
from thesis_validator.agents.hypothesis_builder import (
    BuildRequest,
    HypothesisBuilder,
    assumption_confidence,
    sub_thesis_confidence,
    word_overlap,
)
from thesis_validator.agents.synthesizer import (
    ExpertTranscript,
    SynthesisRequest,
    Synthesizer,
    overall_confidence,
    verdict_for,
)
from thesis_validator.errors import ExternalSourceError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.evidence import (
    ContradictionNode,
    EvidenceNode,
    EvidenceRelevance,
    EvidenceSource,
    EvidenceSourceType,
    Sentiment,
    Severity,
)
from thesis_validator.models.hypothesis import (
    EdgeRelationship,
    HypothesisNode,
    HypothesisStatus,
    HypothesisType,
    RiskLevel,
)
from thesis_validator.models.jobs import ContradictionIntensity
from thesis_validator.services.deal_memory import MemoryHit
from thesis_validator.services.llm import parse_json, truncate_tokens


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _events(events, event_type):
    return [e for e in events if e.type == event_type]


def _hypothesis(content="The dental software market is growing", confidence=0.5, **kwargs):
    return HypothesisNode(
        engagement_id="eng-1",
        type=kwargs.pop("type", HypothesisType.SUB_THESIS),
        content=content,
        confidence=confidence,
        **kwargs,
    )


GROWTH_1 = "Dental software spending shows strong growth of 12% a year across the US market."
GROWTH_2 = "Cloud adoption among dental practices keeps growing as vendors consolidate offerings."
DECLINE = "Independent dental practice counts are in decline as DSOs absorb clinics nationwide."


# ---------------------------------------------------------------------------
# 1. LLM helpers
# ---------------------------------------------------------------------------


class TestParseJson:
    def test_plain_object(self):
        assert parse_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        assert parse_json('Here you go:\n```json\n["x", "y"]\n```') == ["x", "y"]

    def test_embedded_in_prose(self):
        assert parse_json('Sure! {"verdict": "ok"} Hope that helps.') == {"verdict": "ok"}

    def test_garbage_is_none(self):
        assert parse_json("no json here") is None
        assert parse_json("") is None

    def test_short_text_not_truncated(self):
        assert truncate_tokens("short text", 100) == "short text"


# ---------------------------------------------------------------------------
# 2. Hypothesis Builder
# ---------------------------------------------------------------------------

DECOMPOSITION = {
    "original_thesis": "Dental software consolidation reaches 30% EBITDA margins",
    "sub_theses": [
        {"content": "The dental software market is growing steadily", "importance": 0.9},
        {"content": "Practice software vendors can be integrated cheaply", "importance": 0.5},
        {"content": "Margins expand with scale", "importance": 0.2},
    ],
    "assumptions": [
        {
            "content": "Dental practices keep adopting cloud software as the market grows",
            "testability": 0.8,
            "risk_level": "high",
        },
        {"content": "Integration costs stay low", "testability": 0.5, "risk_level": "low"},
    ],
    "key_questions": ["What is net revenue retention?"],
}

_LISTED_ID = re.compile(r"- \[([0-9a-f-]+)\] \((\w+)\)")


def _relationships(prompt: str):
    ids = {kind: [] for kind in ("thesis", "sub_thesis", "assumption")}
    for hid, kind in _LISTED_ID.findall(prompt):
        ids[kind].append(hid)
    subs = ids["sub_thesis"]
    return [
        {"source_id": subs[0], "target_id": subs[1], "relationship": "implies", "strength": 0.6},
        {"source_id": "not-a-node", "target_id": subs[0], "relationship": "supports"},
        {"source_id": subs[0], "target_id": subs[1], "relationship": "nonsense"},
    ]


class TestHypothesisBuilderHelpers:
    def test_sub_thesis_confidence(self):
        assert sub_thesis_confidence(0.9) == 0.42
        assert sub_thesis_confidence(0.5) == 0.5
        assert sub_thesis_confidence(0.2) == 0.56

    def test_assumption_confidence_clamped(self):
        assert assumption_confidence(0.8, RiskLevel.HIGH) == 0.38
        assert assumption_confidence(1.0, RiskLevel.LOW) == 0.6
        assert 0.2 <= assumption_confidence(0.0, RiskLevel.HIGH) <= 0.7

    def test_word_overlap(self):
        assert word_overlap("dental software market", "the dental software market") == 1.0
        assert word_overlap("abc", "xyz") == 0.0


class TestHypothesisBuilder:
    def _build(self, llm, max_hypotheses=5, embedder=None):
        async def scenario():
            memory = InMemoryDealMemory()
            repos = make_repositories()
            events = []
            context = make_context(
                memory=memory, repositories=repos, llm=llm, events=events, embedder=embedder
            )
            result = await HypothesisBuilder().execute(
                BuildRequest(thesis=THESIS, max_hypotheses=max_hypotheses, sector="healthcare"),
                context,
            )
            return result, memory, repos, events

        return _run(scenario())

    def test_llm_decomposition(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION, "Here are hypotheses": _relationships})
        result, memory, repos, events = self._build(llm)

        tree = result.tree
        assert tree.root.content == DECOMPOSITION["original_thesis"]
        assert tree.root.confidence == 0.5
        subs = [n for n in tree.nodes if n.type == HypothesisType.SUB_THESIS]
        assumptions = [n for n in tree.nodes if n.type == HypothesisType.ASSUMPTION]
        assert [s.confidence for s in subs] == [0.42, 0.5, 0.56]
        assert all(s.parent_id == tree.root.id for s in subs)
        assert assumptions[0].confidence == 0.38
        assert assumptions[0].risk_level == RiskLevel.HIGH
        assert assumptions[0].parent_id == subs[0].id  # best word overlap
        assert result.key_questions == ["What is net revenue retention?"]

    def test_edges(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION, "Here are hypotheses": _relationships})
        result, memory, _, _ = self._build(llm)
        edges = result.tree.edges
        supports = [e for e in edges if e.relationship == EdgeRelationship.SUPPORTS]
        requires = [e for e in edges if e.relationship == EdgeRelationship.REQUIRES]
        implies = [e for e in edges if e.relationship == EdgeRelationship.IMPLIES]
        assert len(supports) == 3 and all(e.strength == 0.8 for e in supports)
        assert len(requires) == 2 and all(e.strength == 0.7 for e in requires)
        assert len(implies) == 1  # invalid ids and relationships dropped
        assert len(memory.edges) == len(edges)

    def test_persists_and_emits(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION})
        result, memory, repos, events = self._build(llm)
        ids = {n.id for n in result.tree.nodes}
        assert set(memory.hypotheses) == ids
        assert set(repos.hypotheses.items) == ids
        created = _events(events, EngagementEventType.HYPOTHESIS_CREATED)
        assert {e.data["hypothesis_id"] for e in created} == ids
        assert all(e.agent == "hypothesis_builder" for e in created)

    def test_max_hypotheses_caps_sub_theses(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION})
        result, _, _, _ = self._build(llm, max_hypotheses=2)
        subs = [n for n in result.tree.nodes if n.type == HypothesisType.SUB_THESIS]
        assert len(subs) == 2

    def test_embeddings_attached(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION})
        result, _, _, _ = self._build(llm)
        assert all(n.embedding for n in result.tree.nodes)

    def test_embedding_failure_is_tolerated(self):
        llm = FakeLLM({"Decompose the following": DECOMPOSITION})
        result, _, _, _ = self._build(llm, embedder=FakeEmbedder(fail=True))
        assert all(n.embedding is None for n in result.tree.nodes)

    def test_unusable_reply_falls_back(self):
        result, memory, _, _ = self._build(FakeLLM(default="I cannot help with that."))
        tree = result.tree
        assert tree.root.content == THESIS
        assert len([n for n in tree.nodes if n.type == HypothesisType.SUB_THESIS]) == 3
        assert len([n for n in tree.nodes if n.type == HypothesisType.ASSUMPTION]) == 2
        assert len(memory.hypotheses) == 6

    def test_llm_exception_falls_back(self):
        llm = FakeLLM({"Decompose the following": RuntimeError("provider down")})
        result, _, _, _ = self._build(llm)
        assert len(result.tree.nodes) == 6


# ---------------------------------------------------------------------------
# 3. Evidence Gatherer
# ---------------------------------------------------------------------------


class TestEvidenceGatherer:
    def _gather(self, request_kwargs, *, search=None, financial=None, memory=None, llm=None,
                runs=1, repositories=None):
        async def scenario():
            mem = memory or InMemoryDealMemory()
            hypothesis = _hypothesis()
            await mem.put_hypothesis(hypothesis)
            events = []
            context = make_context(
                memory=mem,
                repositories=repositories,
                llm=llm or FakeLLM({"Classify the sentiment": sentiment_by_keyword}),
                search=search,
                financial=financial,
                events=events,
            )
            request = GatherRequest(
                query=hypothesis.content, hypothesis_ids=[hypothesis.id], **request_kwargs
            )
            results = [await EvidenceGatherer().execute(request, context) for _ in range(runs)]
            return results, mem, hypothesis, events

        return _run(scenario())

    def _search(self):
        return FakeSearch([web_result(1, GROWTH_1), web_result(2, GROWTH_2), web_result(3, DECLINE)])

    def test_gathers_scores_and_classifies(self):
        (result,), memory, hypothesis, events = self._gather({"sources": ["web"]}, search=self._search())
        assert len(result.evidence) == 3
        assert result.source_summary == {"web": 3}
        sentiments = sorted(e.sentiment.value for e in result.evidence)
        assert sentiments == ["contradicting", "supporting", "supporting"]
        for evidence in result.evidence:
            assert 0.3 <= evidence.credibility <= 1.0
            assert evidence.relevance.hypothesis_ids == [hypothesis.id]
            assert 0.0 <= evidence.relevance.relevance_scores[0] <= 1.0
            assert evidence.embedding is not None
        assert len(_events(events, EngagementEventType.EVIDENCE_NEW)) == 3

    def test_dedupes_by_url_across_queries(self):
        search = self._search()
        (result,), _, _, _ = self._gather({"sources": ["web"]}, search=search)
        assert len(search.queries) == 5  # query + 4 templated variants
        assert len(result.evidence) == 3

    def test_updates_confidence(self):
        (result,), memory, hypothesis, events = self._gather({"sources": ["web"]}, search=self._search())
        stored = memory.hypotheses[hypothesis.id]
        assert stored.confidence > 0.5
        assert stored.status == HypothesisStatus.SUPPORTED
        assert result.updated_hypotheses == [hypothesis.id]
        assert len(_events(events, EngagementEventType.HYPOTHESIS_UPDATED)) == 1

    def test_second_run_reports_duplicates(self):
        (first, second), memory, hypothesis, _ = self._gather(
            {"sources": ["web"]}, search=self._search(), runs=2
        )
        assert len(first.evidence) == 3
        assert second.evidence == [] and second.duplicates == 3
        assert second.updated_hypotheses == []
        assert len(memory.evidence) == 3

    def test_shared_article_updates_each_hypothesis(self):
        async def scenario():
            memory = InMemoryDealMemory()
            repos = make_repositories()
            market = _hypothesis("Dental software market is growing")
            spend = _hypothesis("Practices keep increasing software spend")
            for node in (market, spend):
                await memory.put_hypothesis(node)
            events = []
            context = make_context(
                memory=memory,
                repositories=repos,
                llm=FakeLLM({"Classify the sentiment": sentiment_by_keyword}),
                search=FakeSearch([web_result(1, GROWTH_1)]),
                events=events,
            )
            gatherer = EvidenceGatherer()
            runs = []
            for node in (market, spend, spend):
                request = GatherRequest(query=node.content, hypothesis_ids=[node.id], sources=["web"])
                runs.append(await gatherer.execute(request, context))
            return runs, memory, repos, market, spend, events

        (first, second, third), memory, repos, market, spend, events = _run(scenario())

        assert len(first.evidence) == 1
        assert second.evidence == [] and second.duplicates == 1
        assert [e.id for e in second.linked] == [first.evidence[0].id]
        assert second.updated_hypotheses == [spend.id]

        after_first = first.evidence[0]
        assert memory.hypotheses[market.id].status == HypothesisStatus.SUPPORTED
        assert memory.hypotheses[spend.id].status == HypothesisStatus.SUPPORTED
        assert memory.hypotheses[spend.id].confidence == memory.hypotheses[market.id].confidence

        stored = memory.evidence[after_first.id]
        assert stored.relevance.hypothesis_ids == [market.id, spend.id]
        assert repos.evidence.items[after_first.id].relevance.hypothesis_ids == [market.id, spend.id]

        # Gathering the same article again for the same hypothesis is a no-op.
        assert third.linked == [] and third.updated_hypotheses == []
        announced = [e.data["hypothesis_ids"] for e in _events(events, EngagementEventType.EVIDENCE_NEW)]
        assert announced == [[market.id], [spend.id]]

    def test_indexed_document_feeds_documents_source(self):
        async def scenario():
            memory = InMemoryDealMemory()
            hypothesis = _hypothesis()
            await memory.put_hypothesis(hypothesis)
            parser = FakeParser()
            context = make_context(
                memory=memory,
                documents=parser,
                llm=FakeLLM({"Classify the sentiment": sentiment_by_keyword}),
            )
            data = f"{GROWTH_1}\n\n  \n\n{GROWTH_2}".encode()
            count = await index_document(context, data, "text/plain", "cim.txt", document_id="cim")
            result = await EvidenceGatherer().execute(
                GatherRequest(
                    query=hypothesis.content, hypothesis_ids=[hypothesis.id], sources=["documents"]
                ),
                context,
            )
            return count, parser, memory, result

        count, parser, memory, result = _run(scenario())
        assert count == 2
        assert parser.calls == ["text/plain"]
        assert [hit.id for hit in memory.documents] == ["cim_0", "cim_1"]
        assert len(result.evidence) == 2
        assert {e.source.type for e in result.evidence} == {EvidenceSourceType.DOCUMENT}
        assert {e.source.title for e in result.evidence} == {"cim.txt"}

    def test_document_indexing_without_parser(self):
        async def scenario():
            memory = InMemoryDealMemory()
            count = await index_document(make_context(memory=memory), b"text", "text/plain", "a.txt")
            return count, memory

        count, memory = _run(scenario())
        assert count == 0 and memory.documents == []

    def test_document_parser_failure(self):
        async def scenario():
            context = make_context(documents=FakeParser(error=ValueError("encrypted PDF")))
            await index_document(context, b"%PDF", "application/pdf", "locked.pdf")

        with pytest.raises(ExternalSourceError, match="encrypted PDF"):
            _run(scenario())

    def test_credibility_filter(self):
        (result,), _, _, _ = self._gather(
            {"sources": ["web"], "min_credibility": 0.95}, search=self._search()
        )
        assert result.evidence == []

    def test_failing_source_is_skipped(self):
        memory = InMemoryDealMemory(
            documents=[
                MemoryHit(
                    id="doc-1_0",
                    content=GROWTH_1,
                    score=0.9,
                    metadata={"filename": "board_pack_final.pdf"},
                )
            ]
        )
        (result,), _, _, _ = self._gather(
            {"sources": ["web", "documents"]},
            search=FakeSearch(error=TimeoutError("search timed out")),
            memory=memory,
        )
        assert [e.source.type for e in result.evidence] == [EvidenceSourceType.DOCUMENT]
        assert result.evidence[0].source.title == "board_pack_final.pdf"

    def test_missing_search_provider(self):
        (result,), _, _, _ = self._gather({"sources": ["web"]}, search=None)
        assert result.evidence == []

    def test_financial_records(self):
        (result,), _, _, _ = self._gather(
            {"sources": ["financial"], "symbols": ["DSFT"]}, financial=FakeFinancial()
        )
        assert len(result.evidence) == 1
        evidence = result.evidence[0]
        assert evidence.source.type == EvidenceSourceType.FINANCIAL
        assert "quote" in evidence.tags
        assert evidence.sentiment == Sentiment.SUPPORTING

    def test_llm_query_variants(self):
        search = self._search()
        llm = FakeLLM(
            {
                "web search queries": ["dental software TAM", "dental DSO consolidation"],
                "Classify the sentiment": sentiment_by_keyword,
            }
        )
        (result,), _, hypothesis, _ = self._gather({"sources": ["web"]}, search=search, llm=llm)
        assert result.search_queries == [
            hypothesis.content, "dental software TAM", "dental DSO consolidation"
        ]

    def test_secondary_failure_parks_writes(self):
        repos = make_repositories(fail_secondary=True)
        (result,), memory, _, _ = self._gather(
            {"sources": ["web"]}, search=self._search(), repositories=repos
        )
        assert len(result.evidence) == 3
        assert len(memory.evidence) == 3
        # 3 evidence creates + 1 hypothesis update
        assert len(repos.secondary.backlog) == 4


class TestSentimentAndRelevance:
    def test_short_text_is_neutral_without_llm(self):
        async def scenario():
            llm = FakeLLM(default="supporting")
            context = make_context(llm=llm)
            return await classify_sentiment("Too short.", THESIS, context), llm

        sentiment, llm = _run(scenario())
        assert sentiment == Sentiment.NEUTRAL
        assert llm.prompts == []

    def test_llm_failure_is_neutral(self):
        async def scenario():
            context = make_context(llm=FakeLLM({"Classify": RuntimeError("boom")}))
            return await classify_sentiment(GROWTH_1, THESIS, context)

        assert _run(scenario()) == Sentiment.NEUTRAL

    def test_relevance_defaults(self):
        with_embedding = _hypothesis(embedding=[1.0, 0.0])
        without = _hypothesis()
        assert relevance_score([1.0, 0.0], None) == 0.0
        assert relevance_score(None, with_embedding) == 0.5
        assert relevance_score([1.0, 0.0], without) == 0.5
        assert relevance_score([1.0, 0.0, 0.0], with_embedding) == 0.5
        assert relevance_score([1.0, 0.0], with_embedding) == 1.0


# ---------------------------------------------------------------------------
# 4. Contradiction Hunter
# ---------------------------------------------------------------------------


def _analysis(prompt: str):
    if "decline" in prompt.lower():
        return {
            "is_contradiction": True,
            "severity": "high",
            "explanation": "Independent practices are shrinking",
            "bear_case_theme": "Customer base erosion",
        }
    return {"is_contradiction": False}


HUNTER_LLM = {
    "Analyze whether": _analysis,
    "contradictions found": ["Customer base erosion", "DSO buying power"],
    "risk factors": [
        {"category": "market", "description": "Shrinking customer base", "severity": "high",
         "mitigation": "Target DSOs"},
        {"category": "execution", "description": "Integration slips", "severity": "low"},
    ],
}


class TestContradictionHunter:
    def _hunt(self, request=None, *, search=None, llm=None, memory=None, seed=None):
        async def scenario():
            mem = memory or InMemoryDealMemory()
            hypothesis = _hypothesis(confidence=0.6)
            await mem.put_hypothesis(hypothesis)
            if seed:
                await seed(mem, hypothesis)
            repos = make_repositories()
            events = []
            context = make_context(
                memory=mem, repositories=repos, llm=llm or FakeLLM(HUNTER_LLM),
                search=search, events=events,
            )
            result = await ContradictionHunter().execute(request or HuntRequest(), context)
            return result, mem, repos, hypothesis, events

        return _run(scenario())

    def _search(self):
        return FakeSearch([web_result(1, GROWTH_1), web_result(3, DECLINE)])

    def test_raises_contradictions(self):
        result, memory, repos, hypothesis, events = self._hunt(search=self._search())
        assert len(result.contradictions) == 1
        contradiction = result.contradictions[0]
        assert contradiction.severity == Severity.HIGH
        assert contradiction.hypothesis_id == hypothesis.id
        assert contradiction.bear_case_theme == "Customer base erosion"
        assert contradiction.source_url.endswith("article-3")
        assert contradiction.id in memory.contradictions
        assert contradiction.id in repos.contradictions.items
        assert len(_events(events, EngagementEventType.CONTRADICTION_FOUND)) == 1

    def test_rollups(self):
        result, *_ = self._hunt(search=self._search())
        assert result.bear_case_themes == ["Customer base erosion", "DSO buying power"]
        assert [r.category for r in result.risk_factors] == ["market", "execution"]
        expected = round(min(1.0, 0.9 * 0.6 + (0.9 + 0.2) / 2 * 0.4), 4)
        assert result.vulnerability == expected
        assert result.hypotheses_tested and len(result.hypotheses_tested) == 1

    def test_never_touches_confidence(self):
        result, memory, _, hypothesis, events = self._hunt(search=self._search())
        assert memory.hypotheses[hypothesis.id].confidence == 0.6
        assert memory.hypothesis_writes == 1
        assert _events(events, EngagementEventType.HYPOTHESIS_UPDATED) == []

    def test_min_severity_filters(self):
        llm = FakeLLM({**HUNTER_LLM, "Analyze whether": {"is_contradiction": True, "severity": "low",
                                                         "explanation": "minor"}})
        result, *_ = self._hunt(search=self._search(), llm=llm)
        assert result.contradictions == []

    def test_max_per_hypothesis(self):
        llm = FakeLLM({**HUNTER_LLM, "Analyze whether": {"is_contradiction": True, "severity": 0.8,
                                                         "explanation": "bad"}})
        result, *_ = self._hunt(HuntRequest(max_per_hypothesis=1), search=self._search(), llm=llm)
        assert len(result.contradictions) == 1

    def test_fallback_adversarial_queries(self):
        search = self._search()
        self._hunt(HuntRequest(intensity=ContradictionIntensity.LIGHT), search=search)
        assert len(search.queries) == 3
        assert search.queries[0].endswith("problems")

    def test_gathered_contradicting_evidence_is_candidate(self):
        async def seed(memory, hypothesis):
            await memory.add_evidence(
                EvidenceNode.create(
                    "eng-1",
                    DECLINE,
                    EvidenceSource(type=EvidenceSourceType.WEB, credibility_score=0.8),
                    sentiment=Sentiment.CONTRADICTING,
                    relevance=EvidenceRelevance(
                        hypothesis_ids=[hypothesis.id], relevance_scores=[0.7]
                    ),
                )
            )

        result, *_ = self._hunt(search=None, seed=seed)
        assert len(result.contradictions) == 1
        assert result.contradictions[0].evidence_id is not None

    def test_unknown_ids_skipped(self):
        result, *_ = self._hunt(HuntRequest(hypothesis_ids=["missing"]), search=self._search())
        assert result.hypotheses_tested == []
        assert result.vulnerability == 0.0


class TestContradictionHelpers:
    def test_vulnerability_empty(self):
        assert compute_vulnerability([], []) == 0.0

    def test_vulnerability_capped(self):
        contradictions = [
            ContradictionNode(engagement_id="e", description="x", severity=Severity.HIGH)
        ] * 3
        risks = [RiskFactor("market", "y", Severity.HIGH)]
        assert compute_vulnerability(contradictions, risks) == 0.9

    def test_parse_severity(self):
        assert parse_severity("HIGH") == Severity.HIGH
        assert parse_severity(0.45) == Severity.MEDIUM
        assert parse_severity("catastrophic") == Severity.LOW
        assert parse_severity(True) == Severity.LOW


# ---------------------------------------------------------------------------
# 5. Comparables Finder
# ---------------------------------------------------------------------------


def _deal(deal_id, outcome, score, **payload):
    return MemoryHit(
        id=deal_id,
        content=json.dumps({"summary": f"Deal {deal_id}", **payload}),
        score=0.82,
        metadata={"pattern_type": "roll_up", "sector": "healthcare software",
                  "outcome": outcome, "outcome_score": score},
    )


class TestComparablesFinder:
    def _find(self, memory, llm):
        async def scenario():
            events = []
            context = make_context(memory=memory, llm=llm, events=events)
            result = await ComparablesFinder().execute(
                ComparablesRequest(thesis=THESIS, sector="healthcare software"), context
            )
            return result, events

        return _run(scenario())

    def test_with_deals(self):
        memory = InMemoryDealMemory(
            deal_patterns=[
                _deal("d1", "success", 0.8, key_factors=["Sticky workflows"]),
                _deal("d2", "failed", 0.4, warnings=["Overpaid for growth"]),
            ]
        )
        llm = FakeLLM(
            {
                "Analyze this investment thesis": {
                    "identified_pattern": "Market consolidation play",
                    "common_pitfalls": ["Integration complexity"],
                    "success_factors": ["Recurring revenue"],
                    "applicable_frameworks": [{"name": "Buy-and-build", "description": "Roll-up"}, "Porter"],
                    "historical_success_rate": 0.3,
                },
                "Based on this comparables analysis": ["Check integration playbook"],
            }
        )
        result, events = self._find(memory, llm)
        assert [d.id for d in result.comparable_deals] == ["d1", "d2"]
        assert result.comparable_deals[0].key_factors == ["Sticky workflows"]
        assert result.historical_success_rate == pytest.approx(0.6)
        assert result.identified_pattern == "Market consolidation play"
        assert [f.name for f in result.applicable_frameworks] == ["Buy-and-build", "Porter"]
        assert result.recommendations == ["Check integration playbook"]
        assert len(_events(events, EngagementEventType.RESEARCH_PROGRESS)) == 1

    def test_nothing_found(self):
        result, _ = self._find(InMemoryDealMemory(), FakeLLM())
        assert result.comparable_deals == []
        assert result.historical_success_rate == 0.5
        assert result.identified_pattern == "Unknown pattern"
        assert result.recommendations == []

    def test_llm_estimate_without_deals(self):
        llm = FakeLLM({"Analyze this investment thesis": {"identified_pattern": "Turnaround",
                                                          "historical_success_rate": 0.35,
                                                          "common_pitfalls": ["Cash burn"]}})
        result, _ = self._find(InMemoryDealMemory(), llm)
        assert result.historical_success_rate == 0.35
        assert result.recommendations == ["Diligence pitfall: Cash burn"]


# ---------------------------------------------------------------------------
# 6. Synthesizer
# ---------------------------------------------------------------------------


class TestSynthesisScoring:
    def test_overall_confidence(self):
        hyps = [_hypothesis(confidence=0.8), _hypothesis(confidence=0.6)]
        assert overall_confidence(hyps, 0.0) == 0.7
        assert overall_confidence(hyps, 0.5) == 0.55
        assert overall_confidence([], 0.9) == 0.5

    def test_verdict_bands(self):
        assert verdict_for(70.0, 70.0, 40.0) == "proceed"
        assert verdict_for(69.9, 70.0, 40.0) == "review"
        assert verdict_for(40.0, 70.0, 40.0) == "review"
        assert verdict_for(39.9, 70.0, 40.0) == "reject"


class TestSynthesizer:
    def _synthesize(self, confidences, request_kwargs=None, llm=None, events=None):
        async def scenario():
            memory = InMemoryDealMemory()
            nodes = [_hypothesis(f"Claim {i}", c) for i, c in enumerate(confidences)]
            for node in nodes:
                await memory.put_hypothesis(node)
            sink = events if events is not None else []
            context = make_context(memory=memory, llm=llm or FakeLLM(), events=sink)
            request = SynthesisRequest(thesis=THESIS, **(request_kwargs or {}))
            return await Synthesizer().execute(request, context), memory, nodes

        return _run(scenario())

    def test_proceed(self):
        result, _, _ = self._synthesize([0.8, 0.9])
        assert result.confidence_score == 85.0
        assert result.verdict == "proceed"
        assert "85.0%" in result.summary

    def test_vulnerability_penalty(self):
        hunt = HuntResult(vulnerability=0.5, risk_factors=[RiskFactor("market", "Demand", Severity.HIGH)])
        result, _, _ = self._synthesize(
            [0.8, 0.9], {"contradictions": hunt, "confidence_threshold": 75.0}
        )
        assert result.confidence_score == 70.0
        assert result.verdict == "review"
        assert result.risks == ["market: Demand"]
        assert "Mitigate risk: Demand" in result.recommendations

    def test_reject(self):
        result, _, _ = self._synthesize([0.2, 0.3])
        assert result.verdict == "reject"

    def test_llm_narrative(self):
        llm = FakeLLM({"You are writing the conclusion": {
            "summary": "Strong thesis.", "key_findings": ["Growth"], "opportunities": ["Upsell"]}})
        result, _, _ = self._synthesize([0.8], llm=llm)
        assert result.summary == "Strong thesis."
        assert result.key_findings == ["Growth"]
        assert result.opportunities == ["Upsell"]

    def test_transcripts_ingested_once(self):
        async def scenario():
            memory = InMemoryDealMemory()
            hypothesis = _hypothesis(confidence=0.5)
            await memory.put_hypothesis(hypothesis)
            events = []
            context = make_context(
                memory=memory, llm=FakeLLM({"Classify the sentiment": sentiment_by_keyword}),
                events=events,
            )
            transcript = ExpertTranscript(
                content="Former VP Sales: the market for dental software is growing fast, "
                        "practices upgrade every three years.",
                expert_name="Former VP Sales",
                call_id="call-7",
                hypothesis_ids=[hypothesis.id],
            )
            result = await Synthesizer().execute(
                SynthesisRequest(thesis=THESIS, transcripts=[transcript, transcript]), context
            )
            return result, memory, hypothesis, events

        result, memory, hypothesis, events = _run(scenario())
        first, second = result.transcripts
        assert not first.is_duplicate
        assert second.duplicate_of == first.evidence_id
        stored = memory.evidence[first.evidence_id]
        assert stored.source.type == EvidenceSourceType.EXPERT
        assert "call:call-7" in stored.tags
        assert memory.hypotheses[hypothesis.id].confidence > 0.5
        assert len(_events(events, EngagementEventType.EVIDENCE_NEW)) == 1
        assert len(_events(events, EngagementEventType.HYPOTHESIS_UPDATED)) == 1

    def test_repeat_transcript_for_other_hypothesis(self):
        async def scenario():
            memory = InMemoryDealMemory()
            market = _hypothesis(confidence=0.5)
            retention = _hypothesis("Practices rarely switch software vendors", confidence=0.5)
            await memory.put_hypothesis(market)
            await memory.put_hypothesis(retention)
            events = []
            context = make_context(
                memory=memory, llm=FakeLLM({"Classify the sentiment": sentiment_by_keyword}),
                events=events,
            )
            content = ("Former CFO: the dental software market is growing fast and "
                       "practices keep their vendor for a decade.")
            synthesizer = Synthesizer()
            first = await synthesizer.ingest_transcript(
                ExpertTranscript(content=content, hypothesis_ids=[market.id]), THESIS, context
            )
            second = await synthesizer.ingest_transcript(
                ExpertTranscript(content=content, hypothesis_ids=[market.id, retention.id]),
                THESIS,
                context,
            )
            return first, second, memory, market, retention, events

        first, second, memory, market, retention, events = _run(scenario())
        assert second.duplicate_of == first.evidence_id
        assert memory.evidence[first.evidence_id].relevance.hypothesis_ids == [market.id, retention.id]
        assert memory.hypotheses[retention.id].confidence == memory.hypotheses[market.id].confidence
        updated = [e.data["hypothesis_id"] for e in _events(events, EngagementEventType.HYPOTHESIS_UPDATED)]
        assert updated == [market.id, retention.id]
