"""Supabase REST API storage backend.

This module provides database operations using Supabase's REST API (HTTPS port 443),
which works on all hosting platforms including those without IPv6 support.
Vector search goes through the ``match_chunks`` RPC defined in ``supabase/schema.sql``.
"""

from typing import Any, Dict, List, Optional, Sequence

from kbchat.config.logger import app_logger
from kbchat.db.storage import CHUNKS_TABLE, Storage
from kbchat.services.errors import PersistenceError
from kbchat.utils.supabase_client import get_supabase_admin_client


def _format_vector(values: Sequence[float]) -> str:
    """pgvector literal, e.g. ``[0.1,0.2]``."""
    return "[" + ",".join(str(v) for v in values) + "]"


class SupabaseStorage(Storage):
    """Storage backend over the Supabase REST API."""

    backend = "supabase"

    # ============================================
    # Generic Table Operations
    # ============================================

    async def insert_records(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        try:
            client = await get_supabase_admin_client()
            response = await client.table(table).insert(list(rows)).execute()
            if not response.data:
                raise PersistenceError(f"Failed to insert into {table} - no data returned")
            return response.data
        except PersistenceError:
            raise
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
        try:
            client = await get_supabase_admin_client()
            query = client.table(table).select("*")

            if filters:
                for key, value in filters.items():
                    query = query.eq(key, value)

            if order_by:
                query = query.order(order_by, desc=not ascending)

            if limit:
                query = query.limit(limit)

            response = await query.execute()
            return response.data or []
        except Exception as e:
            app_logger.error(f"Failed to get records from {table}: {e}")
            raise PersistenceError(f"Failed to read from {table}", detail=str(e)) from e

    async def update_records(
        self,
        table: str,
        filters: Dict[str, Any],
        updates: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        try:
            client = await get_supabase_admin_client()
            query = client.table(table).update(updates)
            for key, value in filters.items():
                query = query.eq(key, value)
            response = await query.execute()
            return response.data or []
        except Exception as e:
            app_logger.error(f"Failed to update records in {table}: {e}")
            raise PersistenceError(f"Failed to update {table}", detail=str(e)) from e

    async def delete_records(self, table: str, filters: Dict[str, Any]) -> None:
        if not filters:
            raise PersistenceError(f"Refusing to delete from {table} without filters")
        try:
            client = await get_supabase_admin_client()
            query = client.table(table).delete()
            for key, value in filters.items():
                query = query.eq(key, value)
            await query.execute()
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
        # PostgREST OR filter: content.ilike.%a%,content.ilike.%b%
        or_filter = ",".join(f"{column}.ilike.%{term}%" for term in terms)
        try:
            client = await get_supabase_admin_client()
            query = client.table(table).select("*").or_(or_filter)
            if order_by:
                query = query.order(order_by)
            if limit:
                query = query.limit(limit)
            response = await query.execute()
            return response.data or []
        except Exception as e:
            app_logger.error(f"Failed to search {table}: {e}")
            raise PersistenceError(f"Failed to search {table}", detail=str(e)) from e

    async def count_records(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        try:
            client = await get_supabase_admin_client()
            query = client.table(table).select("id", count="exact")
            if filters:
                for key, value in filters.items():
                    query = query.eq(key, value)
            response = await query.execute()
            return response.count or 0
        except Exception as e:
            app_logger.error(f"Failed to count records in {table}: {e}")
            raise PersistenceError(f"Failed to count {table}", detail=str(e)) from e

    # ============================================
    # Vector Search
    # ============================================

    async def match_chunks(
        self,
        query_embedding: Sequence[float],
        match_threshold: float,
        match_count: int,
    ) -> List[Dict[str, Any]]:
        try:
            client = await get_supabase_admin_client()
            response = await client.rpc(
                "match_chunks",
                {
                    "query_embedding": _format_vector(query_embedding),
                    "match_threshold": match_threshold,
                    "match_count": match_count,
                },
            ).execute()
            return response.data or []
        except Exception as e:
            app_logger.error(f"match_chunks RPC failed: {e}")
            raise PersistenceError("Similarity search failed", detail=str(e)) from e

    # ============================================
    # Health Check
    # ============================================

    async def ping(self) -> tuple[bool, str]:
        try:
            client = await get_supabase_admin_client()
            await client.table(CHUNKS_TABLE).select("id").limit(1).execute()
            return True, "Supabase REST API connection healthy"
        except Exception as e:
            return False, f"Supabase connection failed: {str(e)}"
