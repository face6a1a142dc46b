# =============================================================================
# Domain Models — Hypothesis Tree
# =============================================================================
#
# A thesis is decomposed into a tree of hypotheses:
#
#   thesis (root)
#   ├── sub_thesis ──supports──▶ thesis
#   │   └── assumption ──requires──▶ sub_thesis
#   └── ...
#
# Confidence lives in [0, 1]. Nodes are owned by their engagement and are
# mutated only by the evidence gatherer's confidence update (and explicit
# user edits, outside this engine).
# =============================================================================

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class HypothesisType(str, enum.Enum):
    THESIS = "thesis"
    SUB_THESIS = "sub_thesis"
    ASSUMPTION = "assumption"


class HypothesisStatus(str, enum.Enum):
    """
    Testing state of a hypothesis.

        UNTESTED → SUPPORTED → CHALLENGED
                 → CHALLENGED
        REFUTED is only set by explicit review.
    """

    UNTESTED = "untested"
    SUPPORTED = "supported"
    CHALLENGED = "challenged"
    REFUTED = "refuted"


class RiskLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EdgeRelationship(str, enum.Enum):
    REQUIRES = "requires"
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    IMPLIES = "implies"


class HypothesisNode(BaseModel):
    """A single testable claim in the hypothesis tree."""

    model_config = ConfigDict(use_enum_values=False, validate_assignment=True)

    id: str = Field(default_factory=_new_id)
    engagement_id: str
    parent_id: str | None = None
    type: HypothesisType
    content: str = Field(..., min_length=1)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    status: HypothesisStatus = HypothesisStatus.UNTESTED
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    testability: float = Field(default=0.5, ge=0.0, le=1.0)
    risk_level: RiskLevel | None = None
    embedding: list[float] | None = Field(default=None, repr=False)
    created_by: str = "hypothesis_builder"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class HypothesisEdge(BaseModel):
    """Directed relationship between two hypotheses."""

    source_id: str
    target_id: str
    relationship: EdgeRelationship
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str | None = None


class HypothesisTree(BaseModel):
    """
    Nodes plus edges for one engagement.

    Validation guarantees every edge references a node in the tree and
    that there is exactly one root thesis.
    """

    engagement_id: str
    nodes: list[HypothesisNode] = Field(default_factory=list)
    edges: list[HypothesisEdge] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_consistency(self) -> HypothesisTree:
        ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.source_id not in ids or edge.target_id not in ids:
                raise ValueError(
                    f"Edge {edge.source_id} -> {edge.target_id} references an "
                    "unknown hypothesis"
                )
        roots = [n for n in self.nodes if n.type == HypothesisType.THESIS]
        if self.nodes and len(roots) != 1:
            raise ValueError(f"Expected exactly one thesis node, found {len(roots)}")
        return self

    @property
    def root(self) -> HypothesisNode | None:
        for node in self.nodes:
            if node.type == HypothesisType.THESIS:
                return node
        return None

    def children_of(self, node_id: str) -> list[HypothesisNode]:
        return [n for n in self.nodes if n.parent_id == node_id]
