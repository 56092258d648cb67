"""
Change Feed Service

Subscriptions to row-level changes of the messages table. Every subscription
is an explicit handle owned by its subscriber; events are delivered through a
per-subscription queue so each subscriber sees them in arrival order.
"""
import asyncio
import contextlib
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from supabase import AsyncClient

from chatsync.config import settings
from chatsync.exceptions import TransportFailure
from chatsync.models.message import ChangeEvent

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``; pass it back to unsubscribe"""

    def __init__(self, channel_name: str, callback: ChangeCallback):
        self.id = uuid.uuid4().hex
        self.channel_name = channel_name
        self.channel: Any = None
        self._callback = callback
        self._queue: asyncio.Queue = asyncio.Queue()
        self._active = True
        self._busy = False
        self._task = asyncio.get_running_loop().create_task(self._pump())

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending(self) -> bool:
        return self._active and (self._busy or not self._queue.empty())

    def push(self, event: ChangeEvent) -> None:
        if self._active:
            self._queue.put_nowait(event)

    async def _pump(self) -> None:
        while self._active:
            event = await self._queue.get()
            self._busy = True
            try:
                if self._active:
                    await self._callback(event)
            except Exception as e:
                logger.error(f"❌ Change feed callback failed on {self.channel_name}: {e}")
            finally:
                self._busy = False
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handled"""
        if self._active:
            await self._queue.join()

    async def cancel(self) -> None:
        """Stop deliveries immediately; queued events are dropped"""
        if not self._active:
            return
        self._active = False

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        # Unsubscribing from inside our own callback: the pump exits by itself
        if asyncio.current_task() is self._task:
            return

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class ChangeFeed(ABC):
    """Publish/subscribe feed of message table changes"""

    @abstractmethod
    async def subscribe(self, channel_name: str, callback: ChangeCallback) -> Subscription:
        """Start delivering change events to ``callback``"""

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivering events and release the channel"""


class LocalChangeFeed(ChangeFeed):
    """In-process feed; the in-memory message repository publishes into it"""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    async def subscribe(self, channel_name: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(channel_name, callback)
        self._subscriptions[subscription.id] = subscription
        logger.info(f"🎧 Subscribed to local change feed: {channel_name}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        await subscription.cancel()
        logger.info(f"🔌 Unsubscribed from local change feed: {subscription.channel_name}")

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.push(event)

    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def drain(self) -> None:
        """Wait until no subscription has undelivered events"""
        while True:
            pending = [s for s in self._subscriptions.values() if s.pending]
            if not pending:
                return
            for subscription in pending:
                await subscription.drain()


def parse_realtime_payload(payload: Any) -> Optional[ChangeEvent]:
    """
    Normalize a Supabase Realtime postgres_changes payload.

    Accepts both the Python client's shape
    (``{"data": {"type", "record", "old_record"}}``) and the JavaScript
    client's shape (``{"eventType", "new", "old"}``).

    Returns:
        ChangeEvent, or None if the payload is not a recognizable change
    """
    if not isinstance(payload, dict):
        return None

    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    event_type = data.get("type") or data.get("eventType")
    new_record = data.get("record") or data.get("new") or None
    old_record = data.get("old_record") or data.get("old") or None

    try:
        return ChangeEvent(event_type=event_type, new_record=new_record, old_record=old_record)
    except PydanticValidationError:
        return None


class SupabaseChangeFeed(ChangeFeed):
    """Supabase Realtime feed over postgres_changes on the messages table"""

    def __init__(
        self,
        client: Optional[AsyncClient] = None,
        table: Optional[str] = None,
        schema: str = "public"
    ):
        self._client = client
        self.table = table or settings.MESSAGES_TABLE
        self.schema = schema

    async def _get_client(self) -> AsyncClient:
        if self._client is None:
            from chatsync.services.supabase_client import get_async_supabase_client
            self._client = await get_async_supabase_client()
        return self._client

    async def subscribe(self, channel_name: str, callback: ChangeCallback) -> Subscription:
        client = await self._get_client()
        subscription = Subscription(channel_name, callback)

        def on_change(payload: Any) -> None:
            event = parse_realtime_payload(payload)
            if event is None:
                logger.debug(f"Ignoring unrecognized realtime payload on {channel_name}")
                return
            subscription.push(event)

        try:
            channel = client.channel(channel_name)
            channel.on_postgres_changes("*", schema=self.schema, table=self.table, callback=on_change)
            await channel.subscribe()
        except Exception as e:
            await subscription.cancel()
            logger.error(f"❌ Realtime subscribe failed for {channel_name}: {e}")
            raise TransportFailure(f"Realtime subscription failed: {e}") from e

        subscription.channel = channel
        logger.info(f"🎧 Subscribed to realtime channel: {channel_name}")
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        # Stop deliveries first so no callback runs while the channel is torn down
        await subscription.cancel()

        if subscription.channel is None:
            return

        client = await self._get_client()
        try:
            await client.remove_channel(subscription.channel)
            logger.info(f"🔌 Removed realtime channel: {subscription.channel_name}")
        except Exception as e:
            logger.warning(f"Failed to remove realtime channel {subscription.channel_name}: {e}")
        finally:
            subscription.channel = None


# Global change feed instance
_change_feed: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Get or create global change feed for the configured backend"""
    global _change_feed
    if _change_feed is None:
        if settings.use_memory_backend:
            _change_feed = LocalChangeFeed()
        else:
            _change_feed = SupabaseChangeFeed()
    return _change_feed
