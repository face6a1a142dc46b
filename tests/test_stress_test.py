# =============================================================================
# Unit Tests — Stress Test Workflow
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from fakes import (
    ENGAGEMENT_ID,
    FakeEmbedder,
    FakeLLM,
    FakeSearch,
    InMemoryDealMemory,
    make_repositories,
    web_result,
)

from thesis_validator.errors import NotFoundError, WorkflowCancelledError
from thesis_validator.models.events import EngagementEventType
from thesis_validator.models.evidence import Severity
from thesis_validator.models.hypothesis import HypothesisNode, HypothesisType
from thesis_validator.models.jobs import StressTestConfig
from thesis_validator.services.capabilities import SourceCapabilities
from thesis_validator.workflows.stress_test import execute_stress_test_workflow, project_scenario


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _node(confidence: float, type=HypothesisType.SUB_THESIS, content="Dental software demand holds up"):
    return HypothesisNode(
        engagement_id=ENGAGEMENT_ID, type=type, content=content, confidence=confidence
    )


class TestProjectScenario:
    def test_no_contradictions_passes(self):
        scenario = project_scenario(_node(0.6), [])
        assert scenario["projected_confidence"] == 0.6
        assert scenario["confidence_delta"] == 0.0
        assert scenario["outcome"] == "passed"

    def test_high_severity_challenges(self):
        scenario = project_scenario(_node(0.6), [Severity.HIGH])
        assert scenario["projected_confidence"] == pytest.approx(0.33)
        assert scenario["outcome"] == "challenged"

    def test_low_projection_fails(self):
        scenario = project_scenario(_node(0.5), [Severity.HIGH])
        assert scenario["projected_confidence"] == pytest.approx(0.23)
        assert scenario["outcome"] == "failed"

    def test_mild_contradictions_pass(self):
        scenario = project_scenario(_node(0.6), [Severity.MEDIUM, Severity.LOW])
        assert scenario["confidence_delta"] == pytest.approx(-0.105)
        assert scenario["outcome"] == "passed"

    def test_clamped_at_zero(self):
        scenario = project_scenario(_node(0.1), [Severity.HIGH])
        assert scenario["projected_confidence"] == 0.0


class TestStressTestWorkflow:
    def _stress(self, hypothesis_ids=None, config=None, cancel=False):
        async def scenario():
            memory = InMemoryDealMemory()
            sub = _node(0.6)
            assumption = _node(0.5, HypothesisType.ASSUMPTION, "Practices keep buying cloud software")
            for node in (sub, assumption):
                await memory.put_hypothesis(node)
            events = []
            cancel_event = asyncio.Event()
            if cancel:
                cancel_event.set()
            llm = FakeLLM(
                {
                    "Analyze whether": {
                        "is_contradiction": True,
                        "severity": "high",
                        "explanation": "Practice counts are falling",
                    }
                }
            )
            ids = hypothesis_ids(sub, assumption) if callable(hypothesis_ids) else hypothesis_ids
            result = await execute_stress_test_workflow(
                ENGAGEMENT_ID,
                ids,
                config,
                events.append,
                cancel_event=cancel_event,
                memory=memory,
                repositories=make_repositories(),
                llm=llm,
                capabilities=SourceCapabilities(
                    embedder=FakeEmbedder(),
                    search=FakeSearch([web_result(3, "Independent practice counts are in decline.")]),
                ),
            )
            return result, memory, sub, assumption, events

        return _run(scenario())

    def test_projects_every_hypothesis(self):
        result, memory, sub, assumption, events = self._stress()
        outcomes = {s["hypothesis_id"]: s["outcome"] for s in result["scenarios"]}
        assert outcomes == {sub.id: "challenged", assumption.id: "failed"}
        assert result["overall_risk_score"] == 0.75
        assert len(result["vulnerabilities"]) == 2
        assert result["summary"] == {
            "failed": 1,
            "challenged": 1,
            "passed": 0,
            "total_contradictions": 2,
        }

    def test_stored_confidence_untouched(self):
        _, memory, sub, assumption, _ = self._stress()
        assert memory.hypotheses[sub.id].confidence == 0.6
        assert memory.hypotheses[assumption.id].confidence == 0.5

    def test_events(self):
        *_, events = self._stress()
        types = [e.type for e in events if e.agent is None]
        assert types == [
            EngagementEventType.WORKFLOW_STARTED,
            EngagementEventType.PHASE_STARTED,
            EngagementEventType.PHASE_COMPLETED,
            EngagementEventType.WORKFLOW_COMPLETED,
        ]

    def test_explicit_ids(self):
        result, _, sub, _, _ = self._stress(lambda sub, assumption: [sub.id])
        assert [s["hypothesis_id"] for s in result["scenarios"]] == [sub.id]

    def test_unknown_ids_not_found(self):
        with pytest.raises(NotFoundError):
            self._stress(["missing-1", "missing-2"])

    def test_assumptions_excluded(self):
        result, _, sub, _, _ = self._stress(config=StressTestConfig(include_assumptions=False))
        assert [s["hypothesis_id"] for s in result["scenarios"]] == [sub.id]

    def test_cancelled(self):
        with pytest.raises(WorkflowCancelledError):
            self._stress(cancel=True)
