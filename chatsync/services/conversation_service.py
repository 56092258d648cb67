"""
Conversation Service

Derives a user's conversation list (one row per counterpart) and unread
counts from the message log. Holds no state of its own.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from chatsync.exceptions import ChatSyncError, TransportFailure
from chatsync.models.conversation import Conversation, UNKNOWN_USER_LABEL, message_preview
from chatsync.models.message import ChangeEvent
from chatsync.services.change_feed import ChangeFeed, Subscription, get_change_feed
from chatsync.services.message_store import MessageStore, get_message_store
from chatsync.services.profile_service import ProfileDirectory, get_profile_directory

logger = logging.getLogger(__name__)


class ConversationAggregator:
    """Builds conversation lists from the message store and profile lookup"""

    def __init__(self, store: MessageStore, profiles: ProfileDirectory):
        self.store = store
        self.profiles = profiles

    async def _resolve_names(self, user_ids: List[str]) -> Dict[str, str]:
        if not user_ids:
            return {}
        try:
            return await self.profiles.resolve_names(user_ids)
        except TransportFailure as e:
            # Names are cosmetic; fall back to placeholders
            logger.warning(f"Profile lookup unavailable, using placeholder names: {e}")
            return {}

    async def list_conversations(self, viewer_id: str) -> List[Conversation]:
        """
        List the viewer's conversations, most recently active first.

        Args:
            viewer_id: User whose conversation list is built

        Returns:
            One Conversation per counterpart with preview and unread count
        """
        messages = await self.store.list_for_user(viewer_id)

        counterpart_ids = list(dict.fromkeys(msg.counterpart_of(viewer_id) for msg in messages))
        names = await self._resolve_names(counterpart_ids)

        conversations: Dict[str, Conversation] = {}
        for msg in messages:
            counterpart_id = msg.counterpart_of(viewer_id)

            if counterpart_id not in conversations:
                conversations[counterpart_id] = Conversation(
                    counterpart_id=counterpart_id,
                    counterpart_name=names.get(counterpart_id) or UNKNOWN_USER_LABEL,
                    last_message=message_preview(msg),
                    last_message_id=msg.id,
                    last_message_time=msg.created_at,
                    unread_count=0,
                )

            if msg.sender_id == counterpart_id and msg.recipient_id == viewer_id and not msg.read:
                conversations[counterpart_id].unread_count += 1

        result = sorted(conversations.values(), key=lambda c: c.last_message_time, reverse=True)
        logger.info(f"Listed {len(result)} conversations for user {viewer_id}")
        return result

    async def unread_count(self, viewer_id: str, counterpart_id: str) -> int:
        """Unread messages from counterpart to viewer"""
        messages = await self.store.list_between(viewer_id, counterpart_id)
        return sum(
            1 for msg in messages
            if msg.sender_id == counterpart_id and msg.recipient_id == viewer_id and not msg.read
        )

    async def total_unread(self, viewer_id: str) -> int:
        """Unread messages addressed to the viewer across all conversations"""
        messages = await self.store.list_for_user(viewer_id)
        return sum(1 for msg in messages if msg.recipient_id == viewer_id and not msg.read)


ConversationsCallback = Callable[[List[Conversation]], Awaitable[None]]


class ConversationListWatcher:
    """
    Keeps a viewer's conversation list current by recomputing it on every
    change-feed event that touches the viewer.
    """

    def __init__(
        self,
        viewer_id: str,
        aggregator: ConversationAggregator,
        feed: ChangeFeed,
        on_change: ConversationsCallback
    ):
        self.viewer_id = viewer_id
        self.aggregator = aggregator
        self.feed = feed
        self.on_change = on_change
        self.conversations: List[Conversation] = []
        self._subscription: Optional[Subscription] = None
        self._alive = False

    @property
    def is_open(self) -> bool:
        return self._alive

    async def open(self) -> List[Conversation]:
        self._alive = True
        self._subscription = await self.feed.subscribe(f"messages-feed-{self.viewer_id}", self._on_event)
        try:
            return await self.refresh()
        except ChatSyncError:
            await self.close()
            raise

    async def refresh(self) -> List[Conversation]:
        conversations = await self.aggregator.list_conversations(self.viewer_id)
        if self._alive:
            self.conversations = conversations
        return conversations

    async def _on_event(self, event: ChangeEvent) -> None:
        if not self._alive:
            return

        participants = event.participants
        if participants is not None and self.viewer_id not in participants:
            return

        try:
            conversations = await self.refresh()
        except TransportFailure as e:
            logger.warning(f"Conversation list refresh failed for {self.viewer_id}: {e}")
            return

        if self._alive:
            await self.on_change(conversations)

    async def close(self) -> None:
        self._alive = False
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await self.feed.unsubscribe(subscription)
        self.conversations = []


# Global aggregator instance
_aggregator: Optional[ConversationAggregator] = None


def get_conversation_aggregator() -> ConversationAggregator:
    """Get or create global conversation aggregator instance"""
    global _aggregator
    if _aggregator is None:
        _aggregator = ConversationAggregator(get_message_store(), get_profile_directory())
    return _aggregator


async def watch_conversations(viewer_id: str, on_change: ConversationsCallback) -> ConversationListWatcher:
    """Open a watcher for ``viewer_id`` using the global services"""
    watcher = ConversationListWatcher(viewer_id, get_conversation_aggregator(), get_change_feed(), on_change)
    await watcher.open()
    return watcher
