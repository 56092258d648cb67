"""
Supabase Client Factory

Shared Supabase clients for the message table, storage and realtime.
"""
import logging
from typing import Optional
from supabase import create_client, acreate_client, Client, AsyncClient

from chatsync.config import settings

logger = logging.getLogger(__name__)

_client: Optional[Client] = None
_async_client: Optional[AsyncClient] = None


def _supabase_key() -> str:
    # Use service role key for backend operations (bypasses RLS)
    # Falls back to anon key if service key not available
    if settings.SUPABASE_SERVICE_KEY:
        logger.info("Using Supabase service role key (RLS bypassed)")
        return settings.SUPABASE_SERVICE_KEY

    logger.warning(
        "⚠️  SUPABASE_SERVICE_KEY not configured! "
        "Using SUPABASE_KEY (anon key); RLS policies must allow these operations."
    )
    return settings.SUPABASE_KEY


def get_supabase_client() -> Client:
    """Get or create the global synchronous Supabase client"""
    global _client
    if _client is None:
        if not settings.is_supabase_configured:
            raise RuntimeError("Supabase client not initialized. Check configuration.")
        _client = create_client(settings.SUPABASE_URL, _supabase_key())
    return _client


async def get_async_supabase_client() -> AsyncClient:
    """Get or create the global async Supabase client (required for realtime)"""
    global _async_client
    if _async_client is None:
        if not settings.is_supabase_configured:
            raise RuntimeError("Supabase client not initialized. Check configuration.")
        _async_client = await acreate_client(settings.SUPABASE_URL, _supabase_key())
    return _async_client
