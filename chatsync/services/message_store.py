"""
Message Store Service

Source of truth for direct messages. Enforces the content/attachment invariant
and field ownership: only the sender may edit or delete a message, only the
recipient may mark it read.
"""
import logging
from typing import Dict, Iterable, List, Optional, Union

from chatsync.config import settings
from chatsync.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from chatsync.models.message import AttachmentUploadResult, Message, message_sort_key
from chatsync.services.message_repository import MessageRepository, get_message_repository
from chatsync.services.rate_limiter import RateLimiter, get_rate_limiter
from chatsync.utils.text_processing import ensure_identifier

logger = logging.getLogger(__name__)


def default_limits() -> Dict[str, int]:
    return {
        "create": settings.RATE_LIMIT_CREATE_PER_MINUTE,
        "update": settings.RATE_LIMIT_UPDATE_PER_MINUTE,
        "delete": settings.RATE_LIMIT_DELETE_PER_MINUTE,
    }


class MessageStore:
    """Create, edit, delete, mark-read and list direct messages"""

    def __init__(
        self,
        repository: MessageRepository,
        rate_limiter: Optional[RateLimiter] = None,
        limits: Optional[Dict[str, int]] = None,
        max_length: Optional[int] = None
    ):
        """
        Initialize Message Store

        Args:
            repository: Row storage for the messages table
            rate_limiter: Per-user throttling (disabled if None)
            limits: Per-minute limits keyed by "create", "update", "delete"
            max_length: Maximum content length in characters
        """
        self.repository = repository
        self.rate_limiter = rate_limiter
        self.limits = limits if limits is not None else default_limits()
        self.max_length = max_length or settings.MESSAGE_MAX_LENGTH

    async def _throttle(self, action: str, user_id: str) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.enforce(action, user_id, self.limits.get(action, 0))

    def _check_length(self, content: str) -> None:
        if len(content) > self.max_length:
            raise ValidationError(f"Message cannot exceed {self.max_length} characters")

    async def create(
        self,
        sender_id: str,
        recipient_id: str,
        content: Optional[str] = "",
        attachment: Optional[AttachmentUploadResult] = None
    ) -> Message:
        """
        Create a new message.

        Args:
            sender_id: Authenticated sender
            recipient_id: Counterpart receiving the message
            content: Message text (may be empty only with an attachment)
            attachment: Result of a completed upload

        Returns:
            Created message with server-assigned id and created_at, read=False

        Raises:
            ValidationError: Empty message, content too long, or malformed ids
            RateLimitExceededError: Too many creates this minute
            TransportFailure: Store unavailable
        """
        ensure_identifier(sender_id, "sender_id")
        ensure_identifier(recipient_id, "recipient_id")
        content = content or ""

        if not content.strip() and attachment is None:
            raise ValidationError("Message must contain text or an attachment")
        self._check_length(content)

        await self._throttle("create", sender_id)

        row = {
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "content": content,
        }
        if attachment is not None:
            row.update(attachment.to_row())

        record = await self.repository.insert(row)
        message = Message.model_validate(record)
        logger.info(
            f"Created message {message.id} from {sender_id} to {recipient_id}"
            f"{' with ' + message.attachment_type.value if message.attachment_type else ''}"
        )
        return message

    async def get(self, message_id: str) -> Optional[Message]:
        ensure_identifier(message_id, "message_id")
        record = await self.repository.get(message_id)
        return Message.model_validate(record) if record else None

    async def _get_existing(self, message_id: str) -> Message:
        message = await self.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    async def edit_content(self, message_id: str, requester_id: str, new_content: str) -> Message:
        """
        Replace the text of a message. Attachment fields never change.

        Raises:
            ValidationError: New content empty or too long
            NotFoundError: Message no longer exists
            PermissionDeniedError: Requester is not the sender
        """
        if not new_content or not new_content.strip():
            raise ValidationError("Edited message cannot be empty")
        self._check_length(new_content)

        existing = await self._get_existing(message_id)
        if existing.sender_id != requester_id:
            logger.warning(f"User {requester_id} attempted to edit message {message_id} they did not send")
            raise PermissionDeniedError()

        await self._throttle("update", requester_id)

        record = await self.repository.update(
            message_id,
            {"content": new_content},
            match={"sender_id": requester_id}
        )
        if record is None:
            # Deleted between the ownership check and the update
            raise NotFoundError(f"Message {message_id} not found")

        logger.info(f"Edited message {message_id}")
        return Message.model_validate(record)

    async def delete(self, message_id: str, requester_id: str) -> None:
        """
        Hard-delete a message.

        Raises:
            NotFoundError: Message no longer exists
            PermissionDeniedError: Requester is not the sender
        """
        existing = await self._get_existing(message_id)
        if existing.sender_id != requester_id:
            logger.warning(f"User {requester_id} attempted to delete message {message_id} they did not send")
            raise PermissionDeniedError()

        await self._throttle("delete", requester_id)

        record = await self.repository.delete(message_id, match={"sender_id": requester_id})
        if record is None:
            raise NotFoundError(f"Message {message_id} not found")

        logger.info(f"Deleted message {message_id}")

    async def mark_read(self, message_ids: Union[str, Iterable[str]], requester_id: str) -> int:
        """
        Mark one message or a batch read.

        Vanished ids and already-read messages are skipped. Every existing
        message must be addressed to the requester, checked before anything is
        written.

        Returns:
            Number of messages that changed from unread to read

        Raises:
            PermissionDeniedError: Requester is not the recipient of some message
        """
        ids = [message_ids] if isinstance(message_ids, str) else list(dict.fromkeys(message_ids))
        to_update: List[str] = []

        for message_id in ids:
            message = await self.get(message_id)
            if message is None:
                logger.debug(f"Skipping mark-read of vanished message {message_id}")
                continue
            if message.recipient_id != requester_id:
                logger.warning(f"User {requester_id} attempted to mark message {message_id} read")
                raise PermissionDeniedError()
            if not message.read:
                to_update.append(message_id)

        if not to_update:
            return 0

        updated = await self.repository.mark_read(to_update, requester_id)
        return len(updated)

    async def mark_conversation_read(self, requester_id: str, counterpart_id: str) -> int:
        """Mark every unread message from counterpart to requester read"""
        ensure_identifier(requester_id, "requester_id")
        ensure_identifier(counterpart_id, "counterpart_id")

        updated = await self.repository.mark_conversation_read(counterpart_id, requester_id)
        if updated:
            logger.info(f"Marked {len(updated)} messages from {counterpart_id} read for {requester_id}")
        return len(updated)

    async def list_between(self, user_a: str, user_b: str) -> List[Message]:
        """All messages of conversation(A, B), oldest first, ties by id"""
        ensure_identifier(user_a, "user_id")
        ensure_identifier(user_b, "user_id")

        records = await self.repository.list_between(user_a, user_b)
        messages = [Message.model_validate(record) for record in records]
        return sorted(messages, key=message_sort_key)

    async def list_for_user(self, user_id: str) -> List[Message]:
        """All messages the user sent or received, newest first"""
        ensure_identifier(user_id, "user_id")

        records = await self.repository.list_for_user(user_id)
        messages = [Message.model_validate(record) for record in records]
        return sorted(messages, key=message_sort_key, reverse=True)


# Global message store instance
_message_store: Optional[MessageStore] = None


def get_message_store() -> MessageStore:
    """Get or create global message store instance"""
    global _message_store
    if _message_store is None:
        _message_store = MessageStore(get_message_repository(), rate_limiter=get_rate_limiter())
    return _message_store
