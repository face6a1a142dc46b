# =============================================================================
# Embedding Service — Batch Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
# Supports OpenAI, Alibaba Cloud (DashScope), and any other provider that
# implements the OpenAI embeddings endpoint.
#
# Workers are async; the OpenAI client here is sync. `OpenAIEmbedder` wraps
# the batch call in asyncio.to_thread() and satisfies the `Embedder`
# capability protocol (services/capabilities.py).
#
# No retry logic in the embedder. Transient failures bubble up to the
# evidence gatherer (relevance falls back to 0.5) or to the Celery task
# (job retry).
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from openai import OpenAI

from thesis_validator.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Embedding Client — Lazy Singleton
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)

        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a batch of texts.

    Processes texts in sub-batches to respect API token limits.
    Returns embeddings in the SAME ORDER as the input texts.

    Args:
        texts: List of text strings to embed.
        batch_size: Number of texts per API call. Defaults to
            settings.embedding_batch_size (100).

    Returns:
        List of embedding vectors, in the same order as the input texts.

    Raises:
        ValueError: If no API key is configured.
        openai.APIError: If the API call fails.
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size

    all_embeddings: list[list[float]] = [[] for _ in texts]

    for i in range(0, len(texts), _batch_size):
        batch = list(texts[i : i + _batch_size])
        logger.debug(
            "Embedding batch %d–%d of %d texts (model=%s)",
            i + 1,
            min(i + _batch_size, len(texts)),
            len(texts),
            settings.embedding_model,
        )

        create_kwargs: dict = {
            "model": settings.embedding_model,
            "input": batch,
        }
        if settings.embedding_dimensions:
            create_kwargs["dimensions"] = settings.embedding_dimensions

        response = client.embeddings.create(**create_kwargs)

        # Output order must match input order
        for item in sorted(response.data, key=lambda x: x.index):
            all_embeddings[i + item.index] = item.embedding

    logger.info(
        "Generated %d embeddings (model=%s, dimensions=%d)",
        len(texts),
        settings.embedding_model,
        settings.embedding_dimensions,
    )
    return all_embeddings


def embed_query(text: str) -> list[float]:
    """Embed a single string."""
    return embed_batch([text], batch_size=1)[0]


class OpenAIEmbedder:
    """Async `Embedder` backed by the OpenAI-compatible embeddings endpoint."""

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(embed_query, text)

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        return await asyncio.to_thread(embed_batch, list(texts))
