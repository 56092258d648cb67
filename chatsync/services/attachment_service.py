"""
Attachment Upload Service

Turns a pending attachment into a stored, publicly addressable object.
Nothing here touches the messages table: the caller creates the message only
after ``upload`` succeeded.
"""
import asyncio
import logging
import mimetypes
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote, urlparse

import httpx

from chatsync.config import settings
from chatsync.exceptions import TransportFailure, ValidationError
from chatsync.models.message import AttachmentMetadata, AttachmentUploadResult, PendingAttachment
from chatsync.services.rate_limiter import RateLimiter, get_rate_limiter
from chatsync.services.storage_service import ObjectStorage, get_object_storage
from chatsync.utils.text_processing import ensure_identifier, sanitize_file_name

logger = logging.getLogger(__name__)


class AttachmentUploader:
    """Uploads pending attachments under ``{owner_id}/{timestamp}-{file_name}``"""

    def __init__(
        self,
        storage: ObjectStorage,
        rate_limiter: Optional[RateLimiter] = None,
        upload_limit: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        http_timeout: float = 60.0
    ):
        self.storage = storage
        self.rate_limiter = rate_limiter
        self.upload_limit = upload_limit if upload_limit is not None else settings.RATE_LIMIT_UPLOAD_PER_MINUTE
        self._clock = clock
        self._http_timeout = http_timeout

    def build_path(self, owner_id: str, file_name: str) -> str:
        """Storage path; the owner prefix lets bucket policies authorize by path"""
        timestamp_ms = int(self._clock() * 1000)
        return f"{owner_id}/{timestamp_ms}-{sanitize_file_name(file_name)}"

    async def read_bytes(self, pending: PendingAttachment) -> bytes:
        """
        Resolve the pending attachment to bytes

        Raises:
            ValidationError: No data, or a local file that cannot be read
            TransportFailure: Remote uri could not be fetched
        """
        if pending.data is not None:
            return pending.data

        if not pending.uri:
            raise ValidationError("Attachment has no data")

        parsed = urlparse(pending.uri)

        if parsed.scheme in ("http", "https"):
            try:
                async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                    response = await client.get(pending.uri)
                    response.raise_for_status()
                    return response.content
            except httpx.HTTPError as e:
                logger.error(f"❌ Failed to fetch attachment {pending.uri}: {e}")
                raise TransportFailure(f"Could not fetch attachment: {e}") from e

        local_path = Path(unquote(parsed.path) if parsed.scheme == "file" else pending.uri)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, local_path.read_bytes)
        except (OSError, ValueError) as e:
            logger.warning(f"Attachment file could not be read: {local_path} ({e})")
            raise ValidationError("Attachment file could not be read") from e

    async def upload(self, pending: PendingAttachment, owner_id: str) -> AttachmentUploadResult:
        """
        Upload a pending attachment.

        Args:
            pending: Locally selected file
            owner_id: Uploading user, used as the path prefix

        Returns:
            Stored attachment url, type and metadata

        Raises:
            ValidationError: Unreadable attachment or malformed owner id
            RateLimitExceededError: Too many uploads this minute
            TransportFailure: Fetch or storage failure (retryable)
        """
        ensure_identifier(owner_id, "owner_id")

        if self.rate_limiter is not None:
            await self.rate_limiter.enforce("upload", owner_id, self.upload_limit)

        data = await self.read_bytes(pending)
        mime_type = (
            pending.mime_type
            or mimetypes.guess_type(pending.file_name)[0]
            or "application/octet-stream"
        )
        path = self.build_path(owner_id, pending.file_name)

        public_url = await self.storage.put(path, data, mime_type)

        logger.info(f"📎 Uploaded {pending.attachment_type.value} attachment for {owner_id}: {path}")
        return AttachmentUploadResult(
            attachment_url=public_url,
            attachment_type=pending.attachment_type,
            attachment_metadata=AttachmentMetadata(
                file_name=pending.file_name,
                file_size=pending.size if pending.size is not None else len(data),
                mime_type=mime_type,
            ),
            storage_path=path,
        )

    async def discard(self, result: AttachmentUploadResult) -> None:
        """Best-effort removal of an uploaded object no message will reference"""
        if not result.storage_path:
            return
        try:
            await self.storage.remove([result.storage_path])
        except TransportFailure as e:
            logger.warning(f"Could not remove orphaned attachment {result.storage_path}: {e}")


# Global uploader instance
_uploader: Optional[AttachmentUploader] = None


def get_attachment_uploader() -> AttachmentUploader:
    """Get or create global attachment uploader instance"""
    global _uploader
    if _uploader is None:
        _uploader = AttachmentUploader(get_object_storage(), rate_limiter=get_rate_limiter())
    return _uploader
