"""
Chat Session Controller

Orchestrates one open conversation between ``self_id`` and
``counterpart_id``: initial load, realtime reconciliation, fallback polling,
optimistic sends with attachments, edits, deletes and read receipts.

The session owns its cache, feed subscription and poll task for its lifetime.
After ``close()`` every late completion is ignored.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import List, Optional

from chatsync.config import settings
from chatsync.exceptions import (
    ChatSyncError,
    NotFoundError,
    PermissionDeniedError,
    TransportFailure,
    ValidationError,
)
from chatsync.models.message import (
    AttachmentUploadResult,
    ChangeEvent,
    ChangeEventType,
    Message,
    PendingAttachment,
)
from chatsync.services.attachment_service import AttachmentUploader, get_attachment_uploader
from chatsync.services.change_feed import ChangeFeed, Subscription, get_change_feed
from chatsync.services.message_cache import MessageCache
from chatsync.services.message_store import MessageStore, get_message_store

logger = logging.getLogger(__name__)


@dataclass
class Composer:
    """Unsent input of a session; kept intact whenever an operation fails"""
    text: str = ""
    pending_attachment: Optional[PendingAttachment] = None
    editing_message_id: Optional[str] = None

    def reset(self) -> None:
        self.text = ""
        self.pending_attachment = None
        self.editing_message_id = None


class ChatSession:
    """Client-side controller for a single two-party conversation"""

    def __init__(
        self,
        self_id: str,
        counterpart_id: str,
        store: MessageStore,
        uploader: AttachmentUploader,
        feed: ChangeFeed,
        poll_interval: Optional[float] = None
    ):
        self.self_id = self_id
        self.counterpart_id = counterpart_id
        self.store = store
        self.uploader = uploader
        self.feed = feed
        self.poll_interval = poll_interval if poll_interval is not None else settings.CHAT_POLL_INTERVAL_SECONDS

        self.cache = MessageCache(self_id, counterpart_id)
        self.composer = Composer()
        self.last_error: Optional[ChatSyncError] = None

        self._alive = False
        self._sending = False
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None

    # ============ Lifecycle ============

    @property
    def is_open(self) -> bool:
        return self._alive

    @property
    def is_sending(self) -> bool:
        return self._sending

    @property
    def messages(self) -> List[Message]:
        return self.cache.messages

    @property
    def channel_name(self) -> str:
        return f"chat-{self.self_id}-{self.counterpart_id}"

    async def open(self) -> List[Message]:
        """Load the conversation, mark it read, subscribe and start polling"""
        if self._alive:
            return self.messages
        self._alive = True

        try:
            await self.refresh()
            await self.mark_conversation_read()
            self._subscription = await self.feed.subscribe(self.channel_name, self._on_change)
        except ChatSyncError:
            await self.close()
            raise

        if self.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._poll_loop())

        logger.info(f"💬 Opened chat session {self.self_id} ↔ {self.counterpart_id} ({len(self.cache)} messages)")
        return self.messages

    async def close(self) -> None:
        """Stop polling, unsubscribe and discard the cache"""
        was_open = self._alive
        self._alive = False

        if self._poll_task is not None:
            task, self._poll_task = self._poll_task, None
            if task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self.feed.unsubscribe(subscription)

        self.cache.clear()
        if was_open:
            logger.info(f"Closed chat session {self.self_id} ↔ {self.counterpart_id}")

    async def __aenter__(self) -> "ChatSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ============ Synchronization ============

    async def refresh(self) -> List[Message]:
        """Full resync from the store; replaces confirmed messages wholesale"""
        messages = await self.store.list_between(self.self_id, self.counterpart_id)
        if self._alive:
            self.cache.resync(messages)
        return self.messages

    async def _poll_loop(self) -> None:
        while self._alive:
            await asyncio.sleep(self.poll_interval)
            if not self._alive:
                break
            try:
                await self.refresh()
            except TransportFailure as e:
                # The next tick or the realtime feed will converge the cache
                logger.warning(f"Fallback poll failed for {self.channel_name}: {e}")
            except ChatSyncError as e:
                logger.error(f"❌ Fallback poll error for {self.channel_name}: {e}")

    async def _on_change(self, event: ChangeEvent) -> None:
        if not self._alive:
            return

        changed = self.cache.apply(event)
        if not changed:
            return

        if event.event_type is ChangeEventType.INSERT:
            participants = event.participants
            if participants and participants[0] == self.counterpart_id:
                try:
                    await self.mark_conversation_read()
                except TransportFailure as e:
                    logger.warning(f"Could not mark inbound message read: {e}")

    async def mark_conversation_read(self) -> int:
        """Mark every unread message from the counterpart read"""
        updated = await self.store.mark_conversation_read(self.self_id, self.counterpart_id)
        if self._alive:
            self.cache.mark_inbound_read()
        return updated

    # ============ Composer ============

    def set_text(self, text: str) -> None:
        self.composer.text = text

    def attach(self, attachment: PendingAttachment) -> None:
        """Select a file for the next message"""
        if self.composer.editing_message_id is not None:
            raise ValidationError("Finish editing before adding an attachment")
        self.composer.pending_attachment = attachment

    def remove_attachment(self) -> None:
        self.composer.pending_attachment = None

    def can_modify(self, message: Message) -> bool:
        """Edit/delete is offered only for own, server-confirmed messages"""
        return message.sender_id == self.self_id and not self.cache.is_pending(message.id)

    def start_editing(self, message_id: str) -> None:
        message = self._own_message(message_id)
        self.composer.editing_message_id = message.id
        self.composer.text = message.content
        self.composer.pending_attachment = None

    def cancel_editing(self) -> None:
        self.composer.editing_message_id = None
        self.composer.text = ""

    async def submit(self) -> Optional[Message]:
        """Send the composer, or save the edit if one is in progress"""
        if self.composer.editing_message_id is not None:
            return await self.edit(self.composer.editing_message_id, self.composer.text)
        return await self.send()

    # ============ Operations ============

    async def send(
        self,
        content: Optional[str] = None,
        attachment: Optional[PendingAttachment] = None
    ) -> Optional[Message]:
        """
        Send a message, uploading the pending attachment first.

        Arguments, when given, replace the composer's text and attachment.

        Returns:
            The confirmed message, or None if a send is already in flight

        Raises:
            ValidationError: Nothing to send, or content too long
            TransportFailure: Upload or create failed; composer is preserved
        """
        if self._sending:
            logger.debug(f"Send ignored, another send is in flight on {self.channel_name}")
            return None

        if content is not None:
            self.composer.text = content
        if attachment is not None:
            self.composer.pending_attachment = attachment

        raw_text = self.composer.text
        text = raw_text.strip()
        pending_attachment = self.composer.pending_attachment
        if not text and pending_attachment is None:
            raise ValidationError("Message must contain text or an attachment")
        if len(text) > self.store.max_length:
            raise ValidationError(f"Message cannot exceed {self.store.max_length} characters")

        self._sending = True
        placeholder = self.cache.add_pending(text)
        upload: Optional[AttachmentUploadResult] = None
        try:
            if pending_attachment is not None:
                upload = await self.uploader.upload(pending_attachment, self.self_id)

            message = await self.store.create(self.self_id, self.counterpart_id, text, upload)
        except Exception as e:
            self.cache.rollback_pending(placeholder.id)
            if isinstance(e, ChatSyncError):
                self.last_error = e
            if upload is not None:
                await self.uploader.discard(upload)
            logger.warning(f"Send failed on {self.channel_name}: {e}")
            raise
        finally:
            self._sending = False

        if self._alive:
            self.cache.confirm_pending(placeholder.id, message)
            # Input typed while the send was in flight stays in the composer
            if self.composer.text == raw_text:
                self.composer.text = ""
            if self.composer.pending_attachment is pending_attachment:
                self.composer.pending_attachment = None
            self.last_error = None
        return message

    def _own_message(self, message_id: str) -> Message:
        message = self.cache.get(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if not self.can_modify(message):
            raise PermissionDeniedError()
        return message

    async def edit(self, message_id: str, content: str) -> Message:
        """
        Replace the text of one of our own messages.

        Raises:
            ValidationError: New content empty or too long
            NotFoundError: Unknown or vanished message
            PermissionDeniedError: Not our message
        """
        self._own_message(message_id)
        text = (content or "").strip()
        if not text:
            raise ValidationError("Edited message cannot be empty")

        try:
            message = await self.store.edit_content(message_id, self.self_id, text)
        except ChatSyncError as e:
            self.last_error = e
            raise

        if self._alive:
            self.cache.upsert(message)
            if self.composer.editing_message_id == message_id:
                self.composer.reset()
            self.last_error = None
        return message

    async def delete(self, message_id: str) -> None:
        """Delete one of our own messages"""
        self._own_message(message_id)

        try:
            await self.store.delete(message_id, self.self_id)
        except ChatSyncError as e:
            self.last_error = e
            raise

        if self._alive:
            self.cache.remove(message_id)
            if self.composer.editing_message_id == message_id:
                self.composer.reset()
            self.last_error = None


async def open_chat_session(self_id: str, counterpart_id: str) -> ChatSession:
    """Open a session for the pair using the global services"""
    session = ChatSession(
        self_id,
        counterpart_id,
        store=get_message_store(),
        uploader=get_attachment_uploader(),
        feed=get_change_feed(),
    )
    await session.open()
    return session
