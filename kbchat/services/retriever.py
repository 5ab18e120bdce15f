"""Top-K chunk retrieval: vector similarity or keyword overlap.

Both variants implement ``Retriever.top_k``; ``get_retriever`` picks one from
configuration. An empty result means "no context" and is never an error.
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from kbchat.config.logger import app_logger, log_performance
from kbchat.config.settings import settings
from kbchat.db.storage import Storage
from kbchat.services import chunk_store
from kbchat.services.embeddings import embed_query
from kbchat.services.errors import EmbeddingTimeoutError, PersistenceError, RetrievalError

MAX_KEYWORDS = 5
MIN_KEYWORD_LENGTH = 3

STOP_WORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "all", "also", "am", "an", "and",
        "any", "are", "as", "at", "be", "because", "been", "before", "being", "below",
        "between", "both", "but", "by", "can", "could", "did", "do", "does", "doing",
        "down", "during", "each", "few", "for", "from", "further", "had", "has", "have",
        "having", "he", "her", "here", "hers", "him", "his", "how", "i", "if", "in",
        "into", "is", "it", "its", "just", "know", "me", "more", "most", "my", "no",
        "nor", "not", "now", "of", "off", "on", "once", "only", "or", "other", "our",
        "out", "over", "own", "please", "same", "she", "should", "show", "so", "some",
        "such", "tell", "than", "that", "the", "their", "them", "then", "there",
        "these", "they", "this", "those", "through", "to", "too", "under", "until",
        "up", "very", "was", "we", "were", "what", "when", "where", "which", "while",
        "who", "whom", "why", "will", "with", "would", "you", "your",
    }
)

_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass
class RetrievedChunk:
    """A chunk returned by a retriever with its relevance signal."""

    id: str
    doc_id: str
    chunk_index: int
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    similarity: Optional[float] = None
    score: Optional[int] = None

    @property
    def row_number(self) -> int:
        row_number = (self.metadata or {}).get("row_number")
        if row_number is None:
            return self.chunk_index + 2
        return int(row_number)

    @classmethod
    def from_row(cls, row: Dict[str, Any], score: Optional[int] = None) -> "RetrievedChunk":
        similarity = row.get("similarity")
        return cls(
            id=str(row["id"]),
            doc_id=row.get("doc_id", ""),
            chunk_index=int(row.get("chunk_index", 0)),
            content=row.get("content", ""),
            metadata=row.get("metadata") or {},
            similarity=float(similarity) if similarity is not None else None,
            score=score,
        )


def extract_keywords(question: str, max_keywords: int = MAX_KEYWORDS) -> List[str]:
    """Lowercase alphanumeric words minus stop words and words of 2 chars or fewer."""
    keywords: List[str] = []
    for word in _WORD_RE.findall(question.lower()):
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) == max_keywords:
            break
    return keywords


def overlap_score(content: str, keywords: Sequence[str]) -> int:
    """Number of distinct keywords contained in the content."""
    haystack = content.lower()
    return sum(1 for keyword in keywords if keyword in haystack)


class Retriever(ABC):
    """Returns the K most relevant chunks for a question."""

    name: str = "abstract"

    def __init__(self, storage: Storage):
        self.storage = storage

    @abstractmethod
    async def top_k(self, question: str, k: Optional[int] = None) -> List[RetrievedChunk]:
        ...


class KeywordRetriever(Retriever):
    """Lexical retrieval by distinct keyword overlap, no embedding dependency."""

    name = "keyword"

    def __init__(
        self,
        storage: Storage,
        candidate_limit: Optional[int] = None,
        default_k: Optional[int] = None,
    ):
        super().__init__(storage)
        self.candidate_limit = candidate_limit or settings.KEYWORD_CANDIDATE_LIMIT
        self.default_k = default_k or settings.KEYWORD_TOP_K

    async def top_k(self, question: str, k: Optional[int] = None) -> List[RetrievedChunk]:
        k = k or self.default_k
        keywords = extract_keywords(question)

        candidates: List[Dict[str, Any]] = []
        if keywords:
            candidates = await chunk_store.search_content(self.storage, keywords, self.candidate_limit)

        if not candidates:
            app_logger.debug(f"Keyword retrieval fell back to first {k} chunks (keywords={keywords})")
            rows = await chunk_store.first_chunks(self.storage, k)
            return [RetrievedChunk.from_row(row) for row in rows]

        scored = [RetrievedChunk.from_row(row, overlap_score(row.get("content", ""), keywords)) for row in candidates]
        # sorted() is stable: equal scores keep store order
        scored = sorted(scored, key=lambda chunk: chunk.score, reverse=True)
        return scored[:k]


class VectorRetriever(Retriever):
    """Cosine-similarity retrieval through the chunk store's match RPC."""

    name = "vector"

    def __init__(
        self,
        storage: Storage,
        embed_query_fn: Callable[[str], Awaitable[List[float]]] = embed_query,
        fallback: Optional[Retriever] = None,
        threshold: Optional[float] = None,
        default_k: Optional[int] = None,
    ):
        super().__init__(storage)
        self.embed_query_fn = embed_query_fn
        self.fallback = fallback
        self.threshold = settings.VECTOR_MATCH_THRESHOLD if threshold is None else threshold
        self.default_k = default_k or settings.VECTOR_TOP_K

    async def top_k(self, question: str, k: Optional[int] = None) -> List[RetrievedChunk]:
        k = k or self.default_k
        try:
            query_embedding = await self.embed_query_fn(question)
        except EmbeddingTimeoutError:
            if self.fallback is None:
                raise
            app_logger.warning(f"Embedding timed out, degrading to {self.fallback.name} retrieval")
            return await self.fallback.top_k(question)

        try:
            rows = await chunk_store.match(self.storage, query_embedding, self.threshold, k)
        except PersistenceError as exc:
            raise RetrievalError("Similarity search failed", detail=exc.detail) from exc

        return [RetrievedChunk.from_row(row) for row in rows]


def get_retriever(storage: Storage) -> Retriever:
    """Retriever for the configured deployment mode."""
    keyword = KeywordRetriever(storage)
    if settings.effective_retrieval_mode == "vector":
        return VectorRetriever(storage, fallback=keyword)
    return keyword


async def retrieve(retriever: Retriever, question: str) -> List[RetrievedChunk]:
    """Run a retriever and record its timing."""
    start_time = time.time()
    chunks = await retriever.top_k(question)
    log_performance(
        f"{retriever.name} retrieval",
        time.time() - start_time,
        chunk_count=len(chunks),
    )
    return chunks
