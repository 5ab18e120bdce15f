"""Chunk store operations for the single logical knowledge source."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from kbchat.config.logger import app_logger
from kbchat.config.settings import settings
from kbchat.db.storage import CHUNKS_TABLE, Storage


def _doc_id() -> str:
    return settings.KNOWLEDGE_BASE_DOC_ID


async def delete_doc(storage: Storage, doc_id: str | None = None) -> None:
    """Delete every chunk of the knowledge source (the previous generation)."""
    doc_id = doc_id or _doc_id()
    await storage.delete_records(CHUNKS_TABLE, {"doc_id": doc_id})
    app_logger.debug(f"Deleted chunks for doc_id={doc_id}")


async def insert_chunks(
    storage: Storage,
    chunks: Sequence[Dict[str, Any]],
    batch_size: int | None = None,
) -> int:
    """Insert chunk rows in bounded batches and return how many were written."""
    batch_size = batch_size or settings.INGEST_BATCH_SIZE
    written = 0
    for start in range(0, len(chunks), batch_size):
        batch = list(chunks[start : start + batch_size])
        await storage.insert_records(CHUNKS_TABLE, batch)
        written += len(batch)
    return written


async def search_content(storage: Storage, keywords: Sequence[str], limit: int) -> List[Dict[str, Any]]:
    """Chunks containing ANY keyword (case-insensitive), in store order."""
    return await storage.search_records(
        CHUNKS_TABLE,
        column="content",
        terms=keywords,
        limit=limit,
        order_by="chunk_index",
    )


async def first_chunks(storage: Storage, limit: int) -> List[Dict[str, Any]]:
    """The first ``limit`` chunks of the knowledge base."""
    return await storage.get_records(CHUNKS_TABLE, limit=limit, order_by="chunk_index")


async def match(
    storage: Storage,
    query_embedding: Sequence[float],
    threshold: float,
    limit: int,
) -> List[Dict[str, Any]]:
    return await storage.match_chunks(query_embedding, threshold, limit)


async def count_chunks(storage: Storage, doc_id: str | None = None) -> int:
    return await storage.count_records(CHUNKS_TABLE, {"doc_id": doc_id or _doc_id()})
