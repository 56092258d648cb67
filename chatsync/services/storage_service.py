"""
Object Storage Service
Stores chat attachments and hands back publicly addressable urls
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from supabase import Client

from chatsync.config import settings
from chatsync.exceptions import TransportFailure

logger = logging.getLogger(__name__)


class ObjectStorage(ABC):
    """Durable object storage for attachment bytes"""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store ``data`` at ``path`` and return its public url"""

    @abstractmethod
    async def remove(self, paths: List[str]) -> None:
        """Delete stored objects"""


class SupabaseObjectStorage(ObjectStorage):
    """Service for storing chat media in a public Supabase Storage bucket"""

    def __init__(self, client: Optional[Client] = None, bucket: Optional[str] = None):
        """
        Initialize Storage Service

        Args:
            client: Supabase client (if None, will use settings with SERVICE_ROLE_KEY)
            bucket: Bucket name (defaults to settings.CHAT_MEDIA_BUCKET)
        """
        self._client = client
        self.bucket = bucket or settings.CHAT_MEDIA_BUCKET

    @property
    def client(self) -> Client:
        if self._client is None:
            from chatsync.services.supabase_client import get_supabase_client
            self._client = get_supabase_client()
        return self._client

    def _upload(self, path: str, data: bytes, content_type: Optional[str]) -> str:
        bucket = self.client.storage.from_(self.bucket)
        bucket.upload(
            path=path,
            file=data,
            file_options={
                "content-type": content_type or "application/octet-stream",
                "cache-control": "3600",
                "upsert": "false"  # Don't overwrite existing files
            }
        )
        public_url = bucket.get_public_url(path)
        if not public_url:
            raise RuntimeError("Missing public URL for attachment")
        return public_url

    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        loop = asyncio.get_running_loop()
        try:
            public_url = await loop.run_in_executor(None, self._upload, path, data, content_type)
        except Exception as e:
            logger.error(f"Failed to upload file: {e}")
            raise TransportFailure(f"File upload failed: {str(e)}") from e

        logger.info(f"✅ Uploaded file to storage: {self.bucket}/{path}")
        return public_url

    async def remove(self, paths: List[str]) -> None:
        if not paths:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.client.storage.from_(self.bucket).remove, paths)
        except Exception as e:
            logger.error(f"Failed to delete files {paths}: {e}")
            raise TransportFailure(f"File deletion failed: {str(e)}") from e

        logger.info(f"🗑️ Deleted {len(paths)} file(s) from storage: {self.bucket}")


class InMemoryObjectStorage(ObjectStorage):
    """Process-local object storage for local runs and tests"""

    def __init__(self, bucket: Optional[str] = None, base_url: str = "memory://"):
        self.bucket = bucket or settings.CHAT_MEDIA_BUCKET
        self.base_url = base_url
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        if path in self.objects:
            raise TransportFailure(f"Object already exists: {path}")
        self.objects[path] = data
        self.content_types[path] = content_type or "application/octet-stream"
        return f"{self.base_url}{self.bucket}/{path}"

    async def remove(self, paths: List[str]) -> None:
        for path in paths:
            self.objects.pop(path, None)
            self.content_types.pop(path, None)


# Global storage instance
_storage: Optional[ObjectStorage] = None


def get_object_storage() -> ObjectStorage:
    """Get or create global object storage for the configured backend"""
    global _storage
    if _storage is None:
        if settings.use_memory_backend:
            _storage = InMemoryObjectStorage()
        else:
            _storage = SupabaseObjectStorage()
    return _storage
