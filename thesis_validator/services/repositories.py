# =============================================================================
# Repositories — Relational Ports, SQLAlchemy Adapters, Secondary Writer
# =============================================================================
#
# PORTS (structural protocols):
#   EngagementRepository    get_by_id
#   HypothesisRepository    create / update / create_edge / get_by_id /
#                           get_by_engagement
#   EvidenceRepository      create / update / get_by_id / get_by_engagement
#   ContradictionRepository create / update / get_by_id / get_by_engagement
#   JobRepository           create_exclusive / update / get_by_id /
#                           get_by_engagement / get_active
#
# ADAPTERS: Sql*Repository classes on the async session factory. Entity
# writes use session.merge(), so replaying a write is idempotent.
#
# SECONDARY WRITES:
# Workers write to the primary store (deal memory) first. The relational
# copy goes through SecondaryWriter.replicate(): a failure is logged as a
# PersistenceError, the write is parked in a bounded backlog, and the run
# continues. The Celery task replays the backlog at the end of each job.
#
# The job table is NOT written through SecondaryWriter: job lifecycle
# writes are authoritative and their failures propagate.
# =============================================================================

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from thesis_validator.db.engine import async_session_factory
from thesis_validator.db.models import (
    ContradictionRecord,
    EngagementRecord,
    EvidenceRecord,
    HypothesisEdgeRecord,
    HypothesisRecord,
    ResearchJobRecord,
)
from thesis_validator.errors import ConflictError, InvalidTransitionError, PersistenceError
from thesis_validator.models.evidence import (
    ContradictionNode,
    EvidenceNode,
    EvidenceRelevance,
    EvidenceSource,
)
from thesis_validator.models.hypothesis import HypothesisEdge, HypothesisNode
from thesis_validator.models.jobs import Engagement, JobStatus, ResearchJob

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


# ---------------------------------------------------------------------------
# Protocol Definitions
# ---------------------------------------------------------------------------


class EngagementRepository(Protocol):
    async def get_by_id(self, engagement_id: str) -> Engagement | None: ...


class HypothesisRepository(Protocol):
    async def create(self, node: HypothesisNode) -> None: ...

    async def update(self, node: HypothesisNode) -> None: ...

    async def create_edge(self, engagement_id: str, edge: HypothesisEdge) -> None: ...

    async def get_by_id(self, hypothesis_id: str) -> HypothesisNode | None: ...

    async def get_by_engagement(self, engagement_id: str) -> list[HypothesisNode]: ...


class EvidenceRepository(Protocol):
    async def create(self, evidence: EvidenceNode) -> None: ...

    async def update(self, evidence: EvidenceNode) -> None: ...

    async def get_by_id(self, evidence_id: str) -> EvidenceNode | None: ...

    async def get_by_engagement(self, engagement_id: str) -> list[EvidenceNode]: ...


class ContradictionRepository(Protocol):
    async def create(self, contradiction: ContradictionNode) -> None: ...

    async def update(self, contradiction: ContradictionNode) -> None: ...

    async def get_by_id(self, contradiction_id: str) -> ContradictionNode | None: ...

    async def get_by_engagement(self, engagement_id: str) -> list[ContradictionNode]: ...


class JobRepository(Protocol):
    async def create_exclusive(self, job: ResearchJob) -> ResearchJob:
        """
        Insert `job` unless the engagement already has an active job.

        Raises:
            ConflictError: carrying the existing active job's id. Nothing
                is created in that case.
        """
        ...

    async def update(
        self, job: ResearchJob, expected_status: JobStatus | None = None
    ) -> ResearchJob:
        """
        Persist `job`. With `expected_status`, the write only applies if the
        stored status still equals it (compare-and-set).

        Raises:
            InvalidTransitionError: If the stored status changed underneath.
        """
        ...

    async def get_by_id(self, job_id: str) -> ResearchJob | None: ...

    async def get_by_engagement(self, engagement_id: str) -> list[ResearchJob]: ...

    async def get_active(self, engagement_id: str) -> ResearchJob | None: ...

    async def get_by_status(self, status: JobStatus) -> list[ResearchJob]: ...


# ---------------------------------------------------------------------------
# Secondary Writer
# ---------------------------------------------------------------------------


@dataclass
class PendingWrite:
    label: str
    operation: Callable[[], Awaitable[None]]
    error: str


class SecondaryWriter:
    """Best-effort replication to the relational store with a replay backlog."""

    def __init__(self, max_backlog: int = 1000) -> None:
        self.backlog: deque[PendingWrite] = deque(maxlen=max_backlog)

    async def replicate(self, label: str, operation: Callable[[], Awaitable[None]]) -> bool:
        """
        Run `operation`; on failure log it and park it for replay.

        Returns:
            True when the secondary write succeeded.
        """
        try:
            await operation()
            return True
        except Exception as exc:
            error = PersistenceError(f"Secondary write failed ({label}): {exc}")
            logger.warning("%s; queued for replay", error)
            self.backlog.append(PendingWrite(label=label, operation=operation, error=str(exc)))
            return False

    async def replay(self) -> tuple[int, int]:
        """
        Retry every parked write once.

        Returns:
            (replayed, still_pending)
        """
        pending = list(self.backlog)
        self.backlog.clear()
        replayed = 0
        for item in pending:
            try:
                await item.operation()
                replayed += 1
            except Exception as exc:
                logger.warning("Replay of %s failed again: %s", item.label, exc)
                self.backlog.append(PendingWrite(item.label, item.operation, str(exc)))
        if pending:
            logger.info(
                "Secondary replay: %d replayed, %d still pending", replayed, len(self.backlog)
            )
        return replayed, len(self.backlog)


@dataclass
class Repositories:
    """Relational ports handed to workers through WorkerContext."""

    hypotheses: HypothesisRepository
    evidence: EvidenceRepository
    contradictions: ContradictionRepository
    jobs: JobRepository
    engagements: EngagementRepository
    secondary: SecondaryWriter = field(default_factory=SecondaryWriter)


def get_sql_repositories(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Repositories:
    factory = session_factory or async_session_factory
    return Repositories(
        hypotheses=SqlHypothesisRepository(factory),
        evidence=SqlEvidenceRepository(factory),
        contradictions=SqlContradictionRepository(factory),
        jobs=SqlJobRepository(factory),
        engagements=SqlEngagementRepository(factory),
    )


# ---------------------------------------------------------------------------
# SQLAlchemy Adapters
# ---------------------------------------------------------------------------


class _SqlRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _merge(self, record) -> None:
        async with self._session_factory() as session:
            await session.merge(record)
            await session.commit()


class SqlEngagementRepository(_SqlRepository):
    async def get_by_id(self, engagement_id: str) -> Engagement | None:
        async with self._session_factory() as session:
            record = await session.get(EngagementRecord, engagement_id)
            if record is None:
                return None
            return Engagement(
                id=record.id,
                target_company_name=record.target_company_name,
                sector=record.sector,
                thesis_summary=record.thesis_summary,
            )


class SqlHypothesisRepository(_SqlRepository):
    async def create(self, node: HypothesisNode) -> None:
        await self._merge(_hypothesis_to_record(node))

    async def update(self, node: HypothesisNode) -> None:
        await self._merge(_hypothesis_to_record(node))

    async def create_edge(self, engagement_id: str, edge: HypothesisEdge) -> None:
        async with self._session_factory() as session:
            existing = await session.scalar(
                select(HypothesisEdgeRecord).where(
                    HypothesisEdgeRecord.source_id == edge.source_id,
                    HypothesisEdgeRecord.target_id == edge.target_id,
                    HypothesisEdgeRecord.relationship == edge.relationship,
                )
            )
            if existing is None:
                session.add(
                    HypothesisEdgeRecord(
                        engagement_id=engagement_id,
                        source_id=edge.source_id,
                        target_id=edge.target_id,
                        relationship=edge.relationship,
                        strength=edge.strength,
                        reasoning=edge.reasoning,
                    )
                )
                await session.commit()

    async def get_by_id(self, hypothesis_id: str) -> HypothesisNode | None:
        async with self._session_factory() as session:
            record = await session.get(HypothesisRecord, hypothesis_id)
            return _hypothesis_from_record(record) if record else None

    async def get_by_engagement(self, engagement_id: str) -> list[HypothesisNode]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(HypothesisRecord)
                .where(HypothesisRecord.engagement_id == engagement_id)
                .order_by(HypothesisRecord.created_at)
            )
            return [_hypothesis_from_record(r) for r in result.all()]


class SqlEvidenceRepository(_SqlRepository):
    async def create(self, evidence: EvidenceNode) -> None:
        await self._merge(_evidence_to_record(evidence))

    async def update(self, evidence: EvidenceNode) -> None:
        await self._merge(_evidence_to_record(evidence))

    async def get_by_id(self, evidence_id: str) -> EvidenceNode | None:
        async with self._session_factory() as session:
            record = await session.get(EvidenceRecord, evidence_id)
            return _evidence_from_record(record) if record else None

    async def get_by_engagement(self, engagement_id: str) -> list[EvidenceNode]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(EvidenceRecord)
                .where(EvidenceRecord.engagement_id == engagement_id)
                .order_by(EvidenceRecord.created_at)
            )
            return [_evidence_from_record(r) for r in result.all()]


class SqlContradictionRepository(_SqlRepository):
    async def create(self, contradiction: ContradictionNode) -> None:
        await self._merge(ContradictionRecord(**contradiction.model_dump()))

    async def update(self, contradiction: ContradictionNode) -> None:
        await self._merge(ContradictionRecord(**contradiction.model_dump()))

    async def get_by_id(self, contradiction_id: str) -> ContradictionNode | None:
        async with self._session_factory() as session:
            record = await session.get(ContradictionRecord, contradiction_id)
            return ContradictionNode.model_validate(record, from_attributes=True) if record else None

    async def get_by_engagement(self, engagement_id: str) -> list[ContradictionNode]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(ContradictionRecord)
                .where(ContradictionRecord.engagement_id == engagement_id)
                .order_by(ContradictionRecord.created_at)
            )
            return [
                ContradictionNode.model_validate(r, from_attributes=True) for r in result.all()
            ]


class SqlJobRepository(_SqlRepository):
    async def create_exclusive(self, job: ResearchJob) -> ResearchJob:
        async with self._session_factory() as session:
            active = await self._active(session, job.engagement_id)
            if active is not None:
                raise ConflictError(active.id)

            session.add(ResearchJobRecord(**job.model_dump()))
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race on the partial unique index
                await session.rollback()
                active = await self._active(session, job.engagement_id)
                raise ConflictError(active.id if active else "unknown") from None
        logger.info("Created %s job %s for engagement %s", job.job_type.value, job.id, job.engagement_id)
        return job

    async def update(
        self, job: ResearchJob, expected_status: JobStatus | None = None
    ) -> ResearchJob:
        values = job.model_dump(exclude={"id", "engagement_id", "created_at"})
        async with self._session_factory() as session:
            stmt = update(ResearchJobRecord).where(ResearchJobRecord.id == job.id)
            if expected_status is not None:
                stmt = stmt.where(ResearchJobRecord.status == expected_status)
            result = await session.execute(stmt.values(**values))
            await session.commit()
        if result.rowcount == 0:
            raise InvalidTransitionError(
                f"Job {job.id} is no longer {expected_status.value if expected_status else 'present'}"
            )
        return job

    async def get_by_id(self, job_id: str) -> ResearchJob | None:
        async with self._session_factory() as session:
            record = await session.get(ResearchJobRecord, job_id)
            return ResearchJob.model_validate(record, from_attributes=True) if record else None

    async def get_by_engagement(self, engagement_id: str) -> list[ResearchJob]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(ResearchJobRecord)
                .where(ResearchJobRecord.engagement_id == engagement_id)
                .order_by(ResearchJobRecord.created_at.desc())
            )
            return [ResearchJob.model_validate(r, from_attributes=True) for r in result.all()]

    async def get_active(self, engagement_id: str) -> ResearchJob | None:
        async with self._session_factory() as session:
            record = await self._active(session, engagement_id)
            return ResearchJob.model_validate(record, from_attributes=True) if record else None

    async def get_by_status(self, status: JobStatus) -> list[ResearchJob]:
        async with self._session_factory() as session:
            result = await session.scalars(
                select(ResearchJobRecord)
                .where(ResearchJobRecord.status == status)
                .order_by(ResearchJobRecord.updated_at)
            )
            return [ResearchJob.model_validate(r, from_attributes=True) for r in result.all()]

    @staticmethod
    async def _active(session: AsyncSession, engagement_id: str) -> ResearchJobRecord | None:
        return await session.scalar(
            select(ResearchJobRecord)
            .where(
                ResearchJobRecord.engagement_id == engagement_id,
                ResearchJobRecord.status.in_(_ACTIVE_STATUSES),
            )
            .limit(1)
        )


# ---------------------------------------------------------------------------
# Record Conversion
# ---------------------------------------------------------------------------


def _hypothesis_to_record(node: HypothesisNode) -> HypothesisRecord:
    return HypothesisRecord(**node.model_dump())


def _hypothesis_from_record(record: HypothesisRecord) -> HypothesisNode:
    embedding = record.embedding
    return HypothesisNode(
        id=record.id,
        engagement_id=record.engagement_id,
        parent_id=record.parent_id,
        type=record.type,
        content=record.content,
        confidence=record.confidence,
        status=record.status,
        importance=record.importance,
        testability=record.testability,
        risk_level=record.risk_level,
        embedding=[float(x) for x in embedding] if embedding is not None else None,
        created_by=record.created_by,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _evidence_to_record(evidence: EvidenceNode) -> EvidenceRecord:
    return EvidenceRecord(
        id=evidence.id,
        engagement_id=evidence.engagement_id,
        content=evidence.content,
        content_hash=evidence.content_hash,
        source_type=evidence.source.type,
        source_url=evidence.source.url,
        source_title=evidence.source.title,
        credibility_score=evidence.source.credibility_score,
        retrieved_at=evidence.source.retrieved_at,
        sentiment=evidence.sentiment,
        hypothesis_ids=list(evidence.relevance.hypothesis_ids),
        relevance_scores=list(evidence.relevance.relevance_scores),
        tags=list(evidence.tags),
        created_at=evidence.created_at,
        updated_at=evidence.updated_at,
    )


def _evidence_from_record(record: EvidenceRecord) -> EvidenceNode:
    return EvidenceNode(
        id=record.id,
        engagement_id=record.engagement_id,
        content=record.content,
        content_hash=record.content_hash,
        source=EvidenceSource(
            type=record.source_type,
            url=record.source_url,
            title=record.source_title,
            credibility_score=record.credibility_score,
            retrieved_at=record.retrieved_at,
        ),
        sentiment=record.sentiment,
        relevance=EvidenceRelevance(
            hypothesis_ids=list(record.hypothesis_ids or []),
            relevance_scores=list(record.relevance_scores or []),
        ),
        tags=list(record.tags or []),
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
