"""
Profile Lookup Service

Batch resolution of user ids to display names for the conversation list.
Startup company names take precedence over investor names.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from supabase import Client

from chatsync.config import settings
from chatsync.exceptions import TransportFailure

logger = logging.getLogger(__name__)


class ProfileDirectory(ABC):
    """Resolves user ids to display names"""

    @abstractmethod
    async def resolve_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        """Map each resolvable id to a display name; unknown ids are omitted"""


class SupabaseProfileDirectory(ProfileDirectory):
    """Names from the startup_profiles and investor_profiles tables"""

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            from chatsync.services.supabase_client import get_supabase_client
            self._client = get_supabase_client()
        return self._client

    def _select(self, table: str, name_column: str, user_ids: list):
        return (
            self.client.table(table)
            .select(f"user_id, {name_column}")
            .in_("user_id", user_ids)
            .execute()
        )

    async def resolve_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}

        loop = asyncio.get_running_loop()
        try:
            startup_result, investor_result = await asyncio.gather(
                loop.run_in_executor(None, self._select, settings.STARTUP_PROFILES_TABLE, "company_name", ids),
                loop.run_in_executor(None, self._select, settings.INVESTOR_PROFILES_TABLE, "name", ids),
            )
        except Exception as e:
            logger.error(f"❌ Profile lookup failed: {e}")
            raise TransportFailure(f"Profile lookup failed: {e}") from e

        names: Dict[str, str] = {}
        for profile in startup_result.data or []:
            if profile.get("company_name"):
                names[profile["user_id"]] = profile["company_name"]

        for profile in investor_result.data or []:
            if profile.get("name") and profile["user_id"] not in names:
                names[profile["user_id"]] = profile["name"]

        return names


class StaticProfileDirectory(ProfileDirectory):
    """Fixed id → name mapping for local runs and tests"""

    def __init__(self, names: Optional[Dict[str, str]] = None):
        self.names = dict(names or {})

    async def resolve_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        return {user_id: self.names[user_id] for user_id in user_ids if user_id in self.names}


# Global profile directory instance
_profile_directory: Optional[ProfileDirectory] = None


def get_profile_directory() -> ProfileDirectory:
    """Get or create global profile directory for the configured backend"""
    global _profile_directory
    if _profile_directory is None:
        if settings.use_memory_backend:
            _profile_directory = StaticProfileDirectory()
        else:
            _profile_directory = SupabaseProfileDirectory()
    return _profile_directory
