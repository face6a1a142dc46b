# =============================================================================
# Domain Models — Evidence & Contradictions
# =============================================================================
#
# EvidenceNode identity is content-derived: the id is a UUIDv5 of
# (engagement_id, sha256(normalised content)), so submitting the same text
# twice for an engagement produces the same id and the primary store can
# report the second write as a duplicate of the first.
#
# EvidenceRelevance keeps two parallel arrays (hypothesis ids and scores);
# validation rejects any instance where their lengths differ.
# =============================================================================

from __future__ import annotations

import enum
import hashlib
import re
import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator

_EVIDENCE_NAMESPACE = uuid.UUID("6f1c9a2e-4b7d-5e3f-9a10-2c8d4e6f7b31")
_WHITESPACE = re.compile(r"\s+")


def _now() -> datetime:
    return datetime.now(UTC)


class EvidenceSourceType(str, enum.Enum):
    """Where a piece of evidence came from."""

    WEB = "web"
    DOCUMENT = "document"
    MARKET_INTEL = "market_intel"
    FINANCIAL = "financial"
    EXPERT = "expert"


class Sentiment(str, enum.Enum):
    SUPPORTING = "supporting"
    NEUTRAL = "neutral"
    CONTRADICTING = "contradicting"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> float:
        return _SEVERITY_WEIGHTS[self]

    @classmethod
    def from_score(cls, score: float) -> Severity:
        if score >= 0.7:
            return cls.HIGH
        if score >= 0.4:
            return cls.MEDIUM
        return cls.LOW


_SEVERITY_WEIGHTS = {Severity.LOW: 0.2, Severity.MEDIUM: 0.5, Severity.HIGH: 0.9}


class ContradictionStatus(str, enum.Enum):
    UNRESOLVED = "unresolved"
    EXPLAINED = "explained"
    DISMISSED = "dismissed"
    CRITICAL = "critical"


# ---------------------------------------------------------------------------
# Identity helpers
# ---------------------------------------------------------------------------


def normalise_content(content: str) -> str:
    return _WHITESPACE.sub(" ", content).strip().lower()


def content_hash(content: str) -> str:
    """SHA-256 of whitespace/case-normalised content."""
    return hashlib.sha256(normalise_content(content).encode("utf-8")).hexdigest()


def evidence_id_for(engagement_id: str, content: str) -> str:
    return str(uuid.uuid5(_EVIDENCE_NAMESPACE, f"{engagement_id}:{content_hash(content)}"))


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceSource(BaseModel):
    type: EvidenceSourceType
    url: str | None = None
    title: str | None = None
    credibility_score: float = Field(default=0.5, ge=0.0, le=1.0)
    retrieved_at: datetime = Field(default_factory=_now)


class EvidenceRelevance(BaseModel):
    """Parallel arrays linking evidence to the hypotheses it bears on."""

    hypothesis_ids: list[str] = Field(default_factory=list)
    relevance_scores: list[float] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_lengths(self) -> EvidenceRelevance:
        if len(self.hypothesis_ids) != len(self.relevance_scores):
            raise ValueError(
                "hypothesis_ids and relevance_scores must have the same length "
                f"({len(self.hypothesis_ids)} != {len(self.relevance_scores)})"
            )
        for score in self.relevance_scores:
            if not -1.0 <= score <= 1.0:
                raise ValueError(f"Relevance score out of range: {score}")
        return self

    def score_for(self, hypothesis_id: str) -> float | None:
        try:
            return self.relevance_scores[self.hypothesis_ids.index(hypothesis_id)]
        except ValueError:
            return None

    def merged_with(self, other: EvidenceRelevance) -> EvidenceRelevance:
        """Union of both link sets; existing scores win for shared ids."""
        ids = list(self.hypothesis_ids)
        scores = list(self.relevance_scores)
        for hid, score in zip(other.hypothesis_ids, other.relevance_scores):
            if hid not in ids:
                ids.append(hid)
                scores.append(score)
        return EvidenceRelevance(hypothesis_ids=ids, relevance_scores=scores)

    def missing_from(self, other: EvidenceRelevance) -> list[str]:
        """Ids linked by `other` that this link set does not have yet."""
        return [hid for hid in dict.fromkeys(other.hypothesis_ids) if hid not in self.hypothesis_ids]

    def restricted_to(self, hypothesis_ids: list[str]) -> EvidenceRelevance:
        pairs = [
            (hid, score)
            for hid, score in zip(self.hypothesis_ids, self.relevance_scores)
            if hid in hypothesis_ids
        ]
        return EvidenceRelevance(
            hypothesis_ids=[hid for hid, _ in pairs],
            relevance_scores=[score for _, score in pairs],
        )


class EvidenceNode(BaseModel):
    """A scored, classified and linked piece of evidence."""

    id: str
    engagement_id: str
    content: str = Field(..., min_length=1)
    content_hash: str
    source: EvidenceSource
    sentiment: Sentiment = Sentiment.NEUTRAL
    relevance: EvidenceRelevance = Field(default_factory=EvidenceRelevance)
    tags: list[str] = Field(default_factory=list)
    embedding: list[float] | None = Field(default=None, repr=False)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @classmethod
    def create(
        cls,
        engagement_id: str,
        content: str,
        source: EvidenceSource,
        **kwargs,
    ) -> EvidenceNode:
        """Build a node whose id and hash are derived from its content."""
        return cls(
            id=evidence_id_for(engagement_id, content),
            engagement_id=engagement_id,
            content=content,
            content_hash=content_hash(content),
            source=source,
            **kwargs,
        )

    @property
    def credibility(self) -> float:
        return self.source.credibility_score


# ---------------------------------------------------------------------------
# Contradictions
# ---------------------------------------------------------------------------


class ContradictionNode(BaseModel):
    """Evidence that undermines a specific hypothesis."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    engagement_id: str
    hypothesis_id: str | None = None
    evidence_id: str | None = None
    description: str
    severity: Severity = Severity.MEDIUM
    status: ContradictionStatus = ContradictionStatus.UNRESOLVED
    bear_case_theme: str | None = None
    source_url: str | None = None
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=_now)
