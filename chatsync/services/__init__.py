"""Messaging services"""
from .message_store import MessageStore, get_message_store
from .attachment_service import AttachmentUploader, get_attachment_uploader
from .conversation_service import (
    ConversationAggregator,
    ConversationListWatcher,
    get_conversation_aggregator,
    watch_conversations,
)
from .change_feed import ChangeFeed, LocalChangeFeed, SupabaseChangeFeed, Subscription, get_change_feed
from .chat_session import ChatSession, Composer, open_chat_session
from .websocket_service import ConnectionManager, get_connection_manager

__all__ = [
    "MessageStore",
    "get_message_store",
    "AttachmentUploader",
    "get_attachment_uploader",
    "ConversationAggregator",
    "ConversationListWatcher",
    "get_conversation_aggregator",
    "watch_conversations",
    "ChangeFeed",
    "LocalChangeFeed",
    "SupabaseChangeFeed",
    "Subscription",
    "get_change_feed",
    "ChatSession",
    "Composer",
    "open_chat_session",
    "ConnectionManager",
    "get_connection_manager",
]
