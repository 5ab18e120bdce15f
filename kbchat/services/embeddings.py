"""Embedding client for vector retrieval and vector ingestion."""

from __future__ import annotations

from typing import List, Sequence

from openai import APIError, APITimeoutError, AsyncOpenAI

from kbchat.config.logger import app_logger
from kbchat.config.settings import settings
from kbchat.services.errors import EmbeddingTimeoutError, RetrievalError

_embedding_client: AsyncOpenAI | None = None


def get_embedding_client() -> AsyncOpenAI:
    """Return a singleton async OpenAI client for the embedding service."""
    global _embedding_client
    if _embedding_client is None:
        if not settings.embedding_api_key:
            raise ValueError("EMBEDDING_API_KEY or OPENAI_API_KEY must be configured")
        _embedding_client = AsyncOpenAI(
            api_key=settings.embedding_api_key,
            base_url=settings.embedding_base_url or None,
            timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
            max_retries=settings.OPENAI_MAX_RETRIES,
        )
        app_logger.info("Embedding client initialized")
    return _embedding_client


async def embed_texts(texts: Sequence[str]) -> List[List[float]]:
    """Create one embedding per text in a single request.

    Raises:
        EmbeddingTimeoutError: the request exceeded ``EMBEDDING_TIMEOUT_SECONDS``
        RetrievalError: any other failure (including non-2xx responses)
    """
    if not texts:
        return []
    try:
        client = get_embedding_client()
        response = await client.embeddings.create(
            model=settings.OPENAI_EMBEDDING_MODEL,
            input=list(texts),
            dimensions=settings.EMBEDDING_DIMENSIONS,
        )
    except APITimeoutError as exc:
        app_logger.warning(f"Embedding request timed out after {settings.EMBEDDING_TIMEOUT_SECONDS}s")
        raise EmbeddingTimeoutError(detail=str(exc)) from exc
    except (APIError, ValueError) as exc:
        app_logger.error(f"Embedding request failed: {exc}")
        raise RetrievalError("Embedding failed", detail=str(exc)) from exc

    return [item.embedding for item in response.data]


async def embed_query(text: str) -> List[float]:
    """Embed a single question."""
    embeddings = await embed_texts([text])
    return embeddings[0]
