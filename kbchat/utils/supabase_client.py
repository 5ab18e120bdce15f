"""Supabase client initialization."""

from typing import Optional

from supabase import AsyncClient, acreate_client

from kbchat.config.settings import settings
from kbchat.config.logger import app_logger

_supabase_admin_client: Optional[AsyncClient] = None


async def get_supabase_admin_client() -> AsyncClient:
    """Get or create the async Supabase client with the service role key.

    The service role bypasses row-level policies; ownership checks are done by
    the services (conversations are always filtered by ``user_id``).

    Returns:
        AsyncClient: Supabase admin client instance

    Raises:
        ValueError: If Supabase URL or service role key is not configured
    """
    global _supabase_admin_client

    if _supabase_admin_client is not None:
        return _supabase_admin_client

    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ValueError(
            "Supabase URL and SERVICE_ROLE_KEY must be configured. "
            "Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY in .env"
        )

    try:
        _supabase_admin_client = await acreate_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
        )
        app_logger.info("Supabase admin client initialized successfully")
        return _supabase_admin_client
    except Exception as e:
        app_logger.error(f"Failed to initialize Supabase admin client: {e}")
        raise
