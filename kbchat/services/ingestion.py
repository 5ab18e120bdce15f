"""Knowledge base ingestion: CSV rows or free text into chunks.

Every sync replaces the whole knowledge source: the previous generation is
deleted, then the new chunks are inserted in batches. The delete and the
inserts are separate writes, so a question arriving mid-sync can see an empty
or partial knowledge base, and a failure mid-way leaves it partial with the
sync status set to ``error``.
"""

from __future__ import annotations

import csv
import io
import math
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from kbchat.config.logger import app_logger, log_performance
from kbchat.config.settings import settings
from kbchat.db.storage import Storage
from kbchat.services import chunk_store
from kbchat.services.errors import (
    AuthorizationError,
    KnowledgeBaseError,
    PersistenceError,
    RetrievalError,
    UpstreamError,
    ValidationError,
)
from kbchat.services.sync_status import begin_sync, fail_sync, finish_sync

Embedder = Callable[[Sequence[str]], Awaitable[List[List[float]]]]

# Data row i (0-based, after the header) is source row i + 2 (1-based, header is row 1)
HEADER_ROW_OFFSET = 2

# Cells may exceed the csv module default limit of 131072 characters
csv.field_size_limit(2**31 - 1)


def parse_csv(csv_text: str) -> List[List[str]]:
    """Parse RFC-4180 CSV into trimmed rows, dropping blank lines.

    Quoted fields may contain commas, newlines and doubled quotes. Rows whose
    cells are all empty (e.g. ``,,``) are kept so they still occupy a position.

    Raises:
        ValidationError: the reader rejects the input
    """
    rows: List[List[str]] = []
    try:
        for row in csv.reader(io.StringIO(csv_text, newline="")):
            cells = [cell.strip() for cell in row]
            if len(cells) <= 1 and not (cells and cells[0]):
                continue
            rows.append(cells)
    except csv.Error as exc:
        raise ValidationError("Malformed CSV", detail=str(exc)) from exc
    return rows


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def row_content(headers: Sequence[str], row: Sequence[str]) -> str:
    """``"Header1: Value1; Header2: Value2"`` without pairs whose value is empty."""
    pairs = []
    for position, header in enumerate(headers):
        value = row[position] if position < len(row) else ""
        if value:
            pairs.append(f"{header}: {value}")
    return "; ".join(pairs)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _chunk_record(doc_id: str, chunk_index: int, content: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
    now = _now()
    return {
        "doc_id": doc_id,
        "chunk_index": chunk_index,
        "content": content,
        "token_count": estimate_tokens(content),
        "metadata": metadata,
        "created_at": now,
        "updated_at": now,
    }


def build_row_chunks(
    headers: Sequence[str],
    data_rows: Sequence[Sequence[str]],
    source_label: str,
    doc_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """One chunk per non-empty data row; chunk_index is the row position."""
    doc_id = doc_id or settings.KNOWLEDGE_BASE_DOC_ID
    chunks = []
    for position, row in enumerate(data_rows):
        content = row_content(headers, row)
        if not content:
            continue
        chunks.append(
            _chunk_record(
                doc_id,
                position,
                content,
                {
                    "source": source_label,
                    "row_number": position + HEADER_ROW_OFFSET,
                    "headers": list(headers),
                },
            )
        )
    return chunks


def build_text_chunks(
    text: str,
    source_label: str,
    doc_id: Optional[str] = None,
    chunk_size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Fixed-size sliding windows over free text; whitespace-only windows are skipped."""
    doc_id = doc_id or settings.KNOWLEDGE_BASE_DOC_ID
    chunk_size = chunk_size or settings.TEXT_CHUNK_SIZE
    overlap = settings.TEXT_CHUNK_OVERLAP if overlap is None else overlap
    if overlap >= chunk_size:
        raise ValidationError("Chunk overlap must be smaller than the chunk size")

    step = chunk_size - overlap
    chunks: List[Dict[str, Any]] = []
    for start in range(0, len(text), step):
        end = min(start + chunk_size, len(text))
        window = text[start:end]
        if window.strip():
            chunk_index = len(chunks)
            chunks.append(
                _chunk_record(
                    doc_id,
                    chunk_index,
                    window,
                    {
                        "source": source_label,
                        "row_number": chunk_index + 1,
                        "start_char": start,
                        "end_char": end,
                    },
                )
            )
        if end >= len(text):
            break
    return chunks


def _require_admin(actor: Dict[str, Any]) -> None:
    if (actor or {}).get("role") != "admin":
        raise AuthorizationError("Admin role required to sync the knowledge base")


async def _embed_batch(embedder: Embedder, batch: List[Dict[str, Any]]) -> None:
    try:
        vectors = await embedder([chunk["content"] for chunk in batch])
    except RetrievalError as exc:
        raise UpstreamError("Embedding service failed during sync", detail=exc.detail or exc.message) from exc
    if len(vectors) != len(batch):
        raise UpstreamError(f"Embedding service returned {len(vectors)} vectors for {len(batch)} chunks")
    for chunk, vector in zip(batch, vectors):
        chunk["embedding"] = list(vector)


async def _replace_generation(
    storage: Storage,
    chunks: List[Dict[str, Any]],
    embedder: Optional[Embedder],
) -> int:
    await chunk_store.delete_doc(storage)

    batch_size = settings.INGEST_BATCH_SIZE
    written = 0
    for start in range(0, len(chunks), batch_size):
        batch = chunks[start : start + batch_size]
        if embedder is not None:
            await _embed_batch(embedder, batch)
        written += await chunk_store.insert_chunks(storage, batch, batch_size)
        app_logger.debug(f"SYNC batch inserted: {written}/{len(chunks)} chunks")
    return written


async def _run_sync(
    storage: Storage,
    source_label: str,
    build: Callable[[], tuple[List[Dict[str, Any]], int]],
    embedder: Optional[Embedder],
) -> Dict[str, int]:
    start_time = time.time()
    app_logger.info(f"SYNC START: source={source_label!r}")
    await begin_sync(storage)

    try:
        chunks, row_count = build()
        chunk_count = await _replace_generation(storage, chunks, embedder)
        await finish_sync(storage, chunk_count, source_label)
    except Exception as exc:
        error = exc if isinstance(exc, KnowledgeBaseError) else PersistenceError("Sync failed", detail=str(exc))
        app_logger.error(f"SYNC FAILED: source={source_label!r} - {error.message}")
        try:
            await fail_sync(storage, error.message)
        except KnowledgeBaseError as status_exc:
            app_logger.error(f"SYNC status could not be set to error: {status_exc}")
        if error is exc:
            raise
        raise error from exc

    duration = time.time() - start_time
    app_logger.info(f"SYNC DONE: source={source_label!r} chunks={chunk_count} rows={row_count}")
    log_performance("knowledge base sync", duration, chunk_count=chunk_count, row_count=row_count)
    return {"chunk_count": chunk_count, "row_count": row_count}


async def sync_table(
    storage: Storage,
    actor: Dict[str, Any],
    csv_text: Optional[str] = None,
    rows: Optional[Sequence[Sequence[Any]]] = None,
    source_label: str = "csv",
    embedder: Optional[Embedder] = None,
) -> Dict[str, int]:
    """Replace the knowledge base with the rows of a table.

    Args:
        storage: Storage backend
        actor: Authenticated caller (``role`` must be ``admin``)
        csv_text: Raw CSV, header row first
        rows: Already-split rows, header row first (used instead of ``csv_text``)
        source_label: Recorded as the sync's ``doc_title`` and each chunk's source
        embedder: Computes one vector per chunk (vector mode)

    Returns:
        ``{"chunk_count": ..., "row_count": ...}``

    Raises:
        AuthorizationError: actor is not an admin
        ValidationError: blank or malformed input, or fewer than two rows
        PersistenceError: storage failure
    """
    _require_admin(actor)

    if rows is None:
        if not csv_text or not csv_text.strip():
            raise ValidationError("csv is required")
    elif not rows:
        raise ValidationError("rows must not be empty")

    def build() -> tuple[List[Dict[str, Any]], int]:
        if rows is None:
            table = parse_csv(csv_text)
        else:
            table = [["" if cell is None else str(cell).strip() for cell in row] for row in rows]
            table = [row for row in table if any(row) or len(row) > 1]
        if len(table) < 2:
            raise ValidationError("CSV must have at least a header row and one data row.")
        headers, data_rows = table[0], table[1:]
        return build_row_chunks(headers, data_rows, source_label), len(data_rows)

    return await _run_sync(storage, source_label, build, embedder)


async def sync_text(
    storage: Storage,
    actor: Dict[str, Any],
    content: str,
    source_label: str = "document",
    embedder: Optional[Embedder] = None,
) -> Dict[str, int]:
    """Replace the knowledge base with sliding-window chunks of free text."""
    _require_admin(actor)

    if not content or not content.strip():
        raise ValidationError("content is required")

    def build() -> tuple[List[Dict[str, Any]], int]:
        chunks = build_text_chunks(content, source_label)
        return chunks, len(chunks)

    return await _run_sync(storage, source_label, build, embedder)
