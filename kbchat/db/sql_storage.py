"""SQLModel storage backend (Postgres via asyncpg, SQLite via aiosqlite).

Mirrors the Supabase REST semantics: rows are dicts, timestamps are ISO
strings, ``metadata`` is a JSON object. Cosine similarity is computed in
Python because plain SQL has no vector type.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Type, get_args

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlmodel import SQLModel, select

from kbchat.config.logger import app_logger
from kbchat.db.db import close_db, db_session, init_db, ping_database
from kbchat.db.storage import (
    CHUNKS_TABLE,
    CONVERSATIONS_TABLE,
    MESSAGES_TABLE,
    SYNC_STATUS_TABLE,
    Storage,
)
from kbchat.models import Conversation, Message, RagChunk, SyncStatus
from kbchat.services.errors import PersistenceError

TABLE_MODELS: Dict[str, Type[SQLModel]] = {
    CHUNKS_TABLE: RagChunk,
    SYNC_STATUS_TABLE: SyncStatus,
    CONVERSATIONS_TABLE: Conversation,
    MESSAGES_TABLE: Message,
}

# Row key -> model attribute, where they differ
COLUMN_ALIASES: Dict[str, Dict[str, str]] = {
    CHUNKS_TABLE: {"metadata": "metadata_json"},
}


def _model_for(table: str) -> Type[SQLModel]:
    try:
        return TABLE_MODELS[table]
    except KeyError:
        raise PersistenceError(f"Unknown table: {table}") from None


def _attr(table: str, key: str) -> str:
    return COLUMN_ALIASES.get(table, {}).get(key, key)


def _is_datetime_field(model: Type[SQLModel], attr: str) -> bool:
    field = model.model_fields.get(attr)
    if field is None:
        return False
    annotation = field.annotation
    return annotation is datetime or datetime in get_args(annotation)


def _to_model_values(table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Rename aliased keys and parse ISO timestamps for DateTime columns."""
    model = _model_for(table)
    values: Dict[str, Any] = {}
    for key, value in data.items():
        attr = _attr(table, key)
        if isinstance(value, str) and _is_datetime_field(model, attr):
            value = datetime.fromisoformat(value)
        values[attr] = value
    return values


def _to_row(table: str, record: SQLModel) -> Dict[str, Any]:
    row = record.model_dump(mode="json")
    for key, attr in COLUMN_ALIASES.get(table, {}).items():
        if attr in row:
            row[key] = row.pop(attr)
    return row


def _where(table: str, model: Type[SQLModel], filters: Optional[Dict[str, Any]]):
    clauses = []
    for key, value in (filters or {}).items():
        clauses.append(getattr(model, _attr(table, key)) == value)
    return clauses


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SQLStorage(Storage):
    """Storage backend over an async SQLAlchemy engine."""

    backend = "sql"

    def __init__(self, db_url: Optional[str] = None):
        self.db_url = db_url

    async def setup(self) -> None:
        await init_db(self.db_url)

    async def insert_records(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        model = _model_for(table)
        try:
            async with db_session() as session:
                records = [model(**_to_model_values(table, row)) for row in rows]
                session.add_all(records)
                await session.commit()
                return [_to_row(table, record) for record in records]
        except Exception as e:
            app_logger.error(f"Failed to insert into {table}: {e}")
            raise PersistenceError(f"Failed to insert into {table}", detail=str(e)) from e

    async def get_records(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Dict[str, Any]]:
        model = _model_for(table)
        try:
            async with db_session() as session:
                query = select(model).where(*_where(table, model, filters))
                if order_by:
                    column = getattr(model, _attr(table, order_by))
                    query = query.order_by(column.asc() if ascending else column.desc())
                if limit:
                    query = query.limit(limit)
                result = await session.execute(query)
                return [_to_row(table, record) for record in result.scalars().all()]
        except Exception as e:
            app_logger.error(f"Failed to get records from {table}: {e}")
            raise PersistenceError(f"Failed to read from {table}", detail=str(e)) from e

    async def update_records(
        self,
        table: str,
        filters: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        model = _model_for(table)
        values = _to_model_values(table, updates)
        try:
            async with db_session() as session:
                result = await session.execute(select(model).where(*_where(table, model, filters)))
                records = result.scalars().all()
                for record in records:
                    for attr, value in values.items():
                        setattr(record, attr, value)
                await session.commit()
                return [_to_row(table, record) for record in records]
        except Exception as e:
            app_logger.error(f"Failed to update records in {table}: {e}")
            raise PersistenceError(f"Failed to update {table}", detail=str(e)) from e

    async def delete_records(self, table: str, filters: Dict[str, Any]) -> None:
        if not filters:
            raise PersistenceError(f"Refusing to delete from {table} without filters")
        model = _model_for(table)
        try:
            async with db_session() as session:
                await session.execute(sa_delete(model).where(*_where(table, model, filters)))
                await session.commit()
        except Exception as e:
            app_logger.error(f"Failed to delete records from {table}: {e}")
            raise PersistenceError(f"Failed to delete from {table}", detail=str(e)) from e

    async def search_records(
        self,
        table: str,
        column: str,
        terms: Sequence[str],
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if not terms:
            return []
        model = _model_for(table)
        target = getattr(model, _attr(table, column))
        try:
            async with db_session() as session:
                query = select(model).where(or_(*[target.ilike(f"%{term}%") for term in terms]))
                if order_by:
                    query = query.order_by(getattr(model, _attr(table, order_by)))
                if limit:
                    query = query.limit(limit)
                result = await session.execute(query)
                return [_to_row(table, record) for record in result.scalars().all()]
        except Exception as e:
            app_logger.error(f"Failed to search {table}: {e}")
            raise PersistenceError(f"Failed to search {table}", detail=str(e)) from e

    async def count_records(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        model = _model_for(table)
        try:
            async with db_session() as session:
                query = select(func.count()).select_from(model).where(*_where(table, model, filters))
                result = await session.execute(query)
                return int(result.scalar_one())
        except Exception as e:
            app_logger.error(f"Failed to count records in {table}: {e}")
            raise PersistenceError(f"Failed to count {table}", detail=str(e)) from e

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        match_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        try:
            async with db_session() as session:
                result = await session.execute(select(RagChunk).where(RagChunk.embedding.is_not(None)))
                chunks = result.scalars().all()
        except Exception as e:
            app_logger.error(f"Similarity search failed: {e}")
            raise PersistenceError("Similarity search failed", detail=str(e)) from e

        scored = []
        for chunk in chunks:
            similarity = cosine_similarity(query_embedding, chunk.embedding or [])
            if similarity > match_threshold:
                scored.append((similarity, chunk))
        scored.sort(key=lambda item: item[0], reverse=True)

        return [
            {
                "id": chunk.id,
                "doc_id": chunk.doc_id,
                "chunk_index": chunk.chunk_index,
                "content": chunk.content,
                "metadata": chunk.metadata_json or {},
                "similarity": similarity,
            }
            for similarity, chunk in scored[:match_count]
        ]

    async def ping(self) -> tuple[bool, str]:
        return await ping_database()

    async def close(self) -> None:
        await close_db()
