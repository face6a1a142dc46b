# =============================================================================
# Deal Memory — Primary Content/Vector Store (ChromaDB)
# =============================================================================
#
# The primary store for everything a run produces. Writes here are
# authoritative: a failure propagates and fails the phase. The relational
# database (services/repositories.py) is a best-effort secondary copy.
#
# COLLECTIONS (per engagement, prefixed tv_<digest>_):
#   hypotheses      — HypothesisNode, embedded content
#   edges           — HypothesisEdge
#   evidence        — EvidenceNode, id derived from content hash
#   contradictions  — ContradictionNode
#   documents       — data-room chunks for internal-corpus search
#
# COLLECTIONS (shared, institutional):
#   market_signals  — market-intelligence signals searchable by similarity
#   deal_patterns   — historical deal patterns for the comparables finder
#
# Every record keeps its full pydantic payload as JSON in the `payload`
# metadata key, so metadata never has to be sanitised field by field.
# Records without a real embedding get a fixed unit placeholder vector and
# `has_embedding=False`; readers return `embedding=None` for them.
#
# ChromaDB's Python client is synchronous; every call is wrapped in
# asyncio.to_thread().
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb

from thesis_validator.config import settings
from thesis_validator.models.evidence import ContradictionNode, EvidenceNode
from thesis_validator.models.hypothesis import HypothesisEdge, HypothesisNode

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class MemoryHit:
    """A similarity-search hit from documents, signals or deal patterns."""

    id: str
    content: str
    score: float  # cosine similarity, higher = closer
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class EvidenceWriteResult:
    """
    Outcome of an evidence write.

    `duplicate_of` is set when a record with the same content hash already
    existed; `evidence` is then the stored record (with merged links).
    `new_links` lists the hypothesis ids this write linked for the first time.
    """

    evidence: EvidenceNode
    duplicate_of: str | None = None
    new_links: list[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.duplicate_of is None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DealMemory(Protocol):
    """Primary store interface used by workers."""

    engagement_id: str

    async def put_hypothesis(self, node: HypothesisNode) -> None: ...

    async def get_hypothesis(self, hypothesis_id: str) -> HypothesisNode | None: ...

    async def list_hypotheses(self) -> list[HypothesisNode]: ...

    async def put_edge(self, edge: HypothesisEdge) -> None: ...

    async def list_edges(self) -> list[HypothesisEdge]: ...

    async def add_evidence(self, evidence: EvidenceNode) -> EvidenceWriteResult: ...

    async def get_evidence(self, evidence_id: str) -> EvidenceNode | None: ...

    async def list_evidence(self, hypothesis_id: str | None = None) -> list[EvidenceNode]: ...

    async def put_contradiction(self, contradiction: ContradictionNode) -> None: ...

    async def list_contradictions(
        self, hypothesis_id: str | None = None
    ) -> list[ContradictionNode]: ...

    async def add_document_chunks(
        self,
        document_id: str,
        filename: str,
        contents: list[str],
        embeddings: list[list[float]],
    ) -> int: ...

    async def search_documents(self, embedding: list[float], top_k: int) -> list[MemoryHit]: ...

    async def search_market_signals(
        self, embedding: list[float], top_k: int
    ) -> list[MemoryHit]: ...

    async def search_deal_patterns(
        self, embedding: list[float], top_k: int, sector: str | None = None
    ) -> list[MemoryHit]: ...


# ---------------------------------------------------------------------------
# Chroma Client — Lazy Singleton
# ---------------------------------------------------------------------------

_client = None


def get_chroma_client():
    """
    Create and cache the ChromaDB client.

    - chroma_url  → HttpClient (client/server mode)
    - chroma_path → PersistentClient
    - otherwise   → in-process client
    """
    global _client
    if _client is None:
        if settings.chroma_url:
            _client = chromadb.HttpClient(host=settings.chroma_url)
        elif settings.chroma_path:
            _client = chromadb.PersistentClient(path=settings.chroma_path)
        else:
            _client = chromadb.Client()
        logger.info(
            "Initialized ChromaDB client (mode=%s)",
            "http" if settings.chroma_url else "persistent" if settings.chroma_path else "in-process",
        )
    return _client


# ---------------------------------------------------------------------------
# Implementation: ChromaDB
# ---------------------------------------------------------------------------


class ChromaDealMemory:
    """ChromaDB-backed DealMemory for one engagement."""

    def __init__(
        self,
        engagement_id: str,
        client=None,
        dimensions: int | None = None,
    ) -> None:
        self.engagement_id = engagement_id
        self._client = client or get_chroma_client()
        self._dimensions = dimensions or settings.embedding_dimensions
        self._prefix = "tv_" + hashlib.sha1(engagement_id.encode("utf-8")).hexdigest()[:16]
        self._collections: dict[str, Any] = {}
        self._evidence_lock = asyncio.Lock()

    # --- Hypotheses -------------------------------------------------------

    async def put_hypothesis(self, node: HypothesisNode) -> None:
        payload = node.model_dump_json(exclude={"content", "embedding"})
        await asyncio.to_thread(
            self._upsert,
            "hypotheses",
            node.id,
            node.content,
            node.embedding,
            {"payload": payload, "type": node.type.value, "status": node.status.value},
        )

    async def get_hypothesis(self, hypothesis_id: str) -> HypothesisNode | None:
        records = await asyncio.to_thread(self._get, "hypotheses", [hypothesis_id])
        return HypothesisNode.model_validate(records[0]) if records else None

    async def list_hypotheses(self) -> list[HypothesisNode]:
        records = await asyncio.to_thread(self._get, "hypotheses", None)
        nodes = [HypothesisNode.model_validate(r) for r in records]
        return sorted(nodes, key=lambda n: n.created_at)

    async def put_edge(self, edge: HypothesisEdge) -> None:
        edge_id = f"{edge.source_id}:{edge.relationship.value}:{edge.target_id}"
        await asyncio.to_thread(
            self._upsert,
            "edges",
            edge_id,
            edge.reasoning or edge.relationship.value,
            None,
            {"payload": edge.model_dump_json()},
        )

    async def list_edges(self) -> list[HypothesisEdge]:
        records = await asyncio.to_thread(self._get, "edges", None, False)
        return [HypothesisEdge.model_validate(r) for r in records]

    # --- Evidence ---------------------------------------------------------

    async def add_evidence(self, evidence: EvidenceNode) -> EvidenceWriteResult:
        """
        Store evidence keyed by its content-derived id.

        A second write of the same content does not create a new record: the
        hypothesis links are merged into the stored one and the result is
        flagged as a duplicate of it.
        """
        async with self._evidence_lock:
            existing = await self.get_evidence(evidence.id)
            if existing is not None:
                new_links = existing.relevance.missing_from(evidence.relevance)
                if new_links:
                    merged = existing.relevance.merged_with(evidence.relevance)
                    existing = existing.model_copy(update={"relevance": merged})
                    await asyncio.to_thread(self._write_evidence, existing)
                logger.debug("Evidence %s already stored; new links %s", evidence.id, new_links)
                return EvidenceWriteResult(
                    evidence=existing, duplicate_of=existing.id, new_links=new_links
                )

            await asyncio.to_thread(self._write_evidence, evidence)
            return EvidenceWriteResult(
                evidence=evidence, new_links=list(evidence.relevance.hypothesis_ids)
            )

    async def get_evidence(self, evidence_id: str) -> EvidenceNode | None:
        records = await asyncio.to_thread(self._get, "evidence", [evidence_id])
        return EvidenceNode.model_validate(records[0]) if records else None

    async def list_evidence(self, hypothesis_id: str | None = None) -> list[EvidenceNode]:
        records = await asyncio.to_thread(self._get, "evidence", None)
        items = [EvidenceNode.model_validate(r) for r in records]
        if hypothesis_id is not None:
            items = [e for e in items if hypothesis_id in e.relevance.hypothesis_ids]
        return sorted(items, key=lambda e: e.created_at)

    # --- Contradictions ---------------------------------------------------

    async def put_contradiction(self, contradiction: ContradictionNode) -> None:
        await asyncio.to_thread(
            self._upsert,
            "contradictions",
            contradiction.id,
            contradiction.description,
            None,
            {
                "payload": contradiction.model_dump_json(exclude={"description"}),
                "severity": contradiction.severity.value,
            },
            "description",
        )

    async def list_contradictions(
        self, hypothesis_id: str | None = None
    ) -> list[ContradictionNode]:
        records = await asyncio.to_thread(
            self._get, "contradictions", None, False, "description"
        )
        items = [ContradictionNode.model_validate(r) for r in records]
        if hypothesis_id is not None:
            items = [c for c in items if c.hypothesis_id == hypothesis_id]
        return sorted(items, key=lambda c: c.created_at)

    # --- Data room documents ----------------------------------------------

    async def add_document_chunks(
        self,
        document_id: str,
        filename: str,
        contents: list[str],
        embeddings: list[list[float]],
    ) -> int:
        """Index parsed data-room chunks for internal-corpus search."""

        def _add() -> int:
            collection = self._collection("documents")
            collection.upsert(
                ids=[f"{document_id}_{i}" for i in range(len(contents))],
                documents=contents,
                embeddings=embeddings,
                metadatas=[
                    {"document_id": document_id, "filename": filename, "chunk_index": i}
                    for i in range(len(contents))
                ],
            )
            return len(contents)

        count = await asyncio.to_thread(_add)
        logger.info("Indexed %d chunks of %s for engagement %s", count, filename, self.engagement_id)
        return count

    async def search_documents(self, embedding: list[float], top_k: int) -> list[MemoryHit]:
        return await asyncio.to_thread(self._query, self._collection("documents"), embedding, top_k)

    # --- Institutional memory ---------------------------------------------

    async def add_market_signal(
        self, signal_id: str, content: str, embedding: list[float], metadata: dict[str, Any]
    ) -> None:
        await asyncio.to_thread(
            self._shared("market_signals").upsert,
            ids=[signal_id],
            documents=[content],
            embeddings=[embedding],
            metadatas=[_flat_metadata(metadata)],
        )

    async def search_market_signals(self, embedding: list[float], top_k: int) -> list[MemoryHit]:
        return await asyncio.to_thread(
            self._query, self._shared("market_signals"), embedding, top_k
        )

    async def add_deal_pattern(
        self, pattern_id: str, content: str, embedding: list[float], metadata: dict[str, Any]
    ) -> None:
        await asyncio.to_thread(
            self._shared("deal_patterns").upsert,
            ids=[pattern_id],
            documents=[content],
            embeddings=[embedding],
            metadatas=[_flat_metadata(metadata)],
        )

    async def search_deal_patterns(
        self, embedding: list[float], top_k: int, sector: str | None = None
    ) -> list[MemoryHit]:
        where = {"sector": sector} if sector else None
        return await asyncio.to_thread(
            self._query, self._shared("deal_patterns"), embedding, top_k, where
        )

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _collection(self, kind: str):
        if kind not in self._collections:
            self._collections[kind] = self._client.get_or_create_collection(
                name=f"{self._prefix}_{kind}",
                metadata={"hnsw:space": "cosine"},
            )
        return self._collections[kind]

    def _shared(self, kind: str):
        key = f"shared:{kind}"
        if key not in self._collections:
            self._collections[key] = self._client.get_or_create_collection(
                name=f"tv_institutional_{kind}",
                metadata={"hnsw:space": "cosine"},
            )
        return self._collections[key]

    def _placeholder(self) -> list[float]:
        return [1.0] + [0.0] * (self._dimensions - 1)

    def _write_evidence(self, evidence: EvidenceNode) -> None:
        self._upsert(
            "evidence",
            evidence.id,
            evidence.content,
            evidence.embedding,
            {
                "payload": evidence.model_dump_json(exclude={"content", "embedding"}),
                "sentiment": evidence.sentiment.value,
                "source_type": evidence.source.type.value,
            },
        )

    def _upsert(
        self,
        kind: str,
        record_id: str,
        document: str,
        embedding: list[float] | None,
        metadata: dict[str, Any],
        document_field: str = "content",
    ) -> None:
        self._collection(kind).upsert(
            ids=[record_id],
            documents=[document],
            embeddings=[embedding if embedding else self._placeholder()],
            metadatas=[
                {**metadata, "has_embedding": bool(embedding), "document_field": document_field}
            ],
        )

    def _get(
        self,
        kind: str,
        ids: list[str] | None,
        with_embeddings: bool = True,
        document_field: str = "content",
    ) -> list[dict[str, Any]]:
        include = ["documents", "metadatas"]
        if with_embeddings:
            include.append("embeddings")
        result = self._collection(kind).get(ids=ids, include=include)

        records: list[dict[str, Any]] = []
        embeddings = result.get("embeddings")
        for i, _ in enumerate(result["ids"]):
            metadata = result["metadatas"][i] or {}
            record = json.loads(metadata["payload"])
            if kind != "edges":
                record[document_field] = result["documents"][i]
            if with_embeddings and "embedding" not in record:
                has_embedding = metadata.get("has_embedding", False)
                if has_embedding and embeddings is not None and len(embeddings) > i:
                    record["embedding"] = [float(x) for x in embeddings[i]]
            records.append(record)
        return records

    @staticmethod
    def _query(
        collection,
        embedding: list[float],
        top_k: int,
        where: dict[str, Any] | None = None,
    ) -> list[MemoryHit]:
        if collection.count() == 0:
            return []
        results = collection.query(
            query_embeddings=[embedding],
            n_results=min(top_k, collection.count()),
            where=where,
            include=["documents", "metadatas", "distances"],
        )

        hits: list[MemoryHit] = []
        if results and results["ids"] and results["ids"][0]:
            for i, record_id in enumerate(results["ids"][0]):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                hits.append(
                    MemoryHit(
                        id=record_id,
                        content=results["documents"][0][i] if results["documents"] else "",
                        # Chroma cosine distance is in [0, 2]
                        score=round(1.0 - distance, 4),
                        metadata=dict(results["metadatas"][0][i] or {}),
                    )
                )
        return hits


def _flat_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Chroma metadata values must be str, int, float or bool."""
    flat: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        else:
            flat[key] = json.dumps(value, default=str)
    return flat or {"kind": "record"}
