# =============================================================================
# Database Models — SQLAlchemy ORM (Secondary Relational Store)
# =============================================================================
#
# Relational copy of everything a run produces, plus the durable job table.
# Hypotheses, edges, evidence and contradictions are written best-effort
# after the primary (Chroma) write; research_jobs is the source of truth
# for the job lifecycle.
#
# SCHEMA OVERVIEW:
#
#   engagements ──1:N──▶ hypotheses ──1:N──▶ hypothesis_edges
#        │                    ▲
#        ├──1:N──▶ evidence   │ (relevance links in JSONB)
#        ├──1:N──▶ contradictions
#        └──1:N──▶ research_jobs   (≤ 1 row with status pending|running)
#
# The one-active-job rule is a partial unique index, so two concurrent
# submissions cannot both insert an active row.
# =============================================================================

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from thesis_validator.config import settings
from thesis_validator.models.evidence import (
    ContradictionStatus,
    EvidenceSourceType,
    Sentiment,
    Severity,
)
from thesis_validator.models.hypothesis import (
    EdgeRelationship,
    HypothesisStatus,
    HypothesisType,
    RiskLevel,
)
from thesis_validator.models.jobs import JobStatus, JobType


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


def _values_enum(enum_cls, name: str) -> Enum:
    """Persist enum values ("pending"), not member names ("PENDING")."""
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class EngagementRecord(Base):
    """Deal engagement. Owned by the wider application; read here."""

    __tablename__ = "engagements"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    target_company_name: Mapped[str] = mapped_column(String(500), nullable=False)
    sector: Mapped[str | None] = mapped_column(String(200), nullable=True)
    thesis_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


class HypothesisRecord(Base):
    __tablename__ = "hypotheses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    engagement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False,
    )
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    type: Mapped[HypothesisType] = mapped_column(
        _values_enum(HypothesisType, "hypothesis_type"), nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    status: Mapped[HypothesisStatus] = mapped_column(
        _values_enum(HypothesisStatus, "hypothesis_status"),
        nullable=False,
        default=HypothesisStatus.UNTESTED,
    )
    importance: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    testability: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    risk_level: Mapped[RiskLevel | None] = mapped_column(
        _values_enum(RiskLevel, "risk_level"), nullable=True,
    )
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=True,
    )
    created_by: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (Index("idx_hypotheses_engagement", "engagement_id"),)


class HypothesisEdgeRecord(Base):
    __tablename__ = "hypothesis_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    engagement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False,
    )
    source_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("hypotheses.id", ondelete="CASCADE"), nullable=False,
    )
    target_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("hypotheses.id", ondelete="CASCADE"), nullable=False,
    )
    relationship: Mapped[EdgeRelationship] = mapped_column(
        _values_enum(EdgeRelationship, "edge_relationship"), nullable=False,
    )
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("source_id", "target_id", "relationship", name="uq_edge"),
    )


class EvidenceRecord(Base):
    """
    Evidence row. `hypothesis_ids` and `relevance_scores` are parallel
    JSONB arrays, validated equal-length before insert.
    """

    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    engagement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    source_type: Mapped[EvidenceSourceType] = mapped_column(
        _values_enum(EvidenceSourceType, "evidence_source_type"), nullable=False,
    )
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_title: Mapped[str | None] = mapped_column(Text, nullable=True)
    credibility_score: Mapped[float] = mapped_column(Float, nullable=False)
    retrieved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sentiment: Mapped[Sentiment] = mapped_column(
        _values_enum(Sentiment, "evidence_sentiment"), nullable=False,
    )
    hypothesis_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    relevance_scores: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("engagement_id", "content_hash", name="uq_evidence_content"),
    )


class ContradictionRecord(Base):
    __tablename__ = "contradictions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    engagement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False,
    )
    hypothesis_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    evidence_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[Severity] = mapped_column(
        _values_enum(Severity, "contradiction_severity"), nullable=False,
    )
    status: Mapped[ContradictionStatus] = mapped_column(
        _values_enum(ContradictionStatus, "contradiction_status"), nullable=False,
    )
    bear_case_theme: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


class ResearchJobRecord(Base):
    """Durable job record. Status only moves forward (see models/jobs.py)."""

    __tablename__ = "research_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    engagement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("engagements.id", ondelete="CASCADE"), nullable=False,
    )
    job_type: Mapped[JobType] = mapped_column(
        _values_enum(JobType, "job_type"), nullable=False, default=JobType.RESEARCH,
    )
    status: Mapped[JobStatus] = mapped_column(
        _values_enum(JobStatus, "job_status"), nullable=False, default=JobStatus.PENDING,
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    config: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    results: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index(
            "uq_research_jobs_active_engagement",
            "engagement_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
        ),
        Index("idx_research_jobs_engagement", "engagement_id", "created_at"),
    )


# HNSW index for hypothesis similarity queries
hypothesis_embedding_idx = Index(
    "idx_hypothesis_embedding_hnsw",
    HypothesisRecord.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)
