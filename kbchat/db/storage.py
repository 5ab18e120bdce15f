"""Storage collaborator interface.

Services talk to storage through generic table operations, the same shape as
the Supabase REST helpers. Two backends implement it:

- ``SupabaseStorage`` (``kbchat.db.supabase_db``): PostgREST over HTTPS plus the
  ``match_chunks`` pgvector RPC.
- ``SQLStorage`` (``kbchat.db.sql_storage``): SQLModel over an async SQLAlchemy
  engine (Postgres via asyncpg, SQLite via aiosqlite).

Rows go in and come out as plain dicts with JSON-compatible values
(ISO timestamps, string ids).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from kbchat.config.logger import app_logger
from kbchat.config.settings import settings

CHUNKS_TABLE = "rag_chunks"
SYNC_STATUS_TABLE = "sync_status"
CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"


class Storage(ABC):
    """Generic table operations used by the knowledge base services."""

    backend: str = "abstract"

    @abstractmethod
    async def insert_records(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert rows and return them as stored."""

    @abstractmethod
    async def get_records(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
        ascending: bool = True,
    ) -> List[Dict[str, Any]]:
        """Return rows matching every equality filter."""

    @abstractmethod
    async def update_records(
        self,
        table: str,
        filters: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Update rows matching the filters and return them."""

    @abstractmethod
    async def delete_records(self, table: str, filters: Dict[str, Any]) -> None:
        """Delete rows matching the filters."""

    @abstractmethod
    async def search_records(
        self,
        table: str,
        column: str,
        terms: Sequence[str],
        limit: Optional[int] = None,
        order_by: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return rows whose ``column`` contains ANY term (case-insensitive)."""

    @abstractmethod
    async def count_records(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count rows matching the filters."""

    @abstractmethod
    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        match_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        """Chunks with cosine similarity above the threshold, most similar first.

        Each row carries ``id, doc_id, chunk_index, content, metadata, similarity``.
        """

    @abstractmethod
    async def ping(self) -> tuple[bool, str]:
        """Check whether the backend is reachable."""

    async def setup(self) -> None:
        """Prepare the backend at startup."""

    async def close(self) -> None:
        """Release backend resources."""


_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """FastAPI dependency returning the configured storage backend (singleton)."""
    global _storage
    if _storage is not None:
        return _storage

    backend = settings.effective_storage_backend
    if backend == "supabase":
        from kbchat.db.supabase_db import SupabaseStorage

        _storage = SupabaseStorage()
    else:
        from kbchat.db.sql_storage import SQLStorage

        _storage = SQLStorage()
    app_logger.info(f"Using {backend} storage backend")
    return _storage


def reset_storage() -> None:
    """Forget the cached backend (used on shutdown)."""
    global _storage
    _storage = None
