# =============================================================================
# External Capabilities — Search, Financial Data, Documents, Embeddings
# =============================================================================
#
# The engine consumes four outside capabilities through structural
# protocols. Concrete network clients live outside this package; a
# deployment registers them once at startup:
#
#   configure_capabilities(
#       search=MyWebSearch(), financial=MyMarketFeed(), documents=MyParser(),
#   )
#
# Any capability left unset is simply skipped by the evidence gatherer (with
# a warning), except the embedder, which defaults to OpenAIEmbedder.
#
# ARCHITECTURE:
#   SearchProvider         search(query, max_results) -> [SearchResult]
#   FinancialDataProvider  quote / fundamentals / news -> [FinancialRecord]
#   DocumentParser         parse(bytes, mime_type) -> [DocumentChunk]
#   Embedder               embed(text) / embed_many(texts)
#   SourceCapabilities     bundle handed to every worker via WorkerContext
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    """One hit from a web search provider."""

    title: str
    url: str
    content: str
    published_at: datetime | None = None
    author: str | None = None
    score: float | None = None


@dataclass
class FinancialRecord:
    """
    One record from a financial-data feed.

    `credibility` and `sentiment` are optional: feeds that already grade
    their records (e.g. analyst sentiment on a news item) skip the
    engine's own scoring for that field.
    """

    symbol: str | None
    data_type: str  # "quote" | "fundamentals" | "news"
    title: str
    content: str
    url: str | None = None
    published_at: datetime | None = None
    credibility: float | None = None
    sentiment: str | None = None


@dataclass
class DocumentChunk:
    content: str
    page_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol Definitions
# ---------------------------------------------------------------------------


class SearchProvider(Protocol):
    async def search(self, query: str, max_results: int = 10) -> list[SearchResult]:
        ...


class FinancialDataProvider(Protocol):
    async def quote(self, symbol: str) -> list[FinancialRecord]:
        ...

    async def fundamentals(self, symbol: str) -> list[FinancialRecord]:
        ...

    async def news(self, topic: str) -> list[FinancialRecord]:
        ...


class DocumentParser(Protocol):
    async def parse(self, data: bytes, mime_type: str) -> list[DocumentChunk]:
        ...


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        ...


@dataclass
class SourceCapabilities:
    """Capabilities available to a run. Unset providers are skipped."""

    embedder: Embedder
    search: SearchProvider | None = None
    financial: FinancialDataProvider | None = None
    documents: DocumentParser | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_capabilities: SourceCapabilities | None = None


def configure_capabilities(
    *,
    embedder: Embedder | None = None,
    search: SearchProvider | None = None,
    financial: FinancialDataProvider | None = None,
    documents: DocumentParser | None = None,
) -> SourceCapabilities:
    """Register the process-wide capability bundle."""
    global _capabilities
    if embedder is None:
        from thesis_validator.services.embedder import OpenAIEmbedder

        embedder = OpenAIEmbedder()

    _capabilities = SourceCapabilities(
        embedder=embedder,
        search=search,
        financial=financial,
        documents=documents,
    )
    logger.info(
        "Capabilities configured: search=%s, financial=%s, documents=%s",
        type(search).__name__ if search else None,
        type(financial).__name__ if financial else None,
        type(documents).__name__ if documents else None,
    )
    return _capabilities


def get_capabilities() -> SourceCapabilities:
    """Return the registered bundle, creating an embedder-only one if unset."""
    if _capabilities is None:
        return configure_capabilities()
    return _capabilities
