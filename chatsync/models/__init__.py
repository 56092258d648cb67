"""Data models"""
from chatsync.models.message import (
    Message,
    MessageAttachmentType,
    AttachmentMetadata,
    AttachmentUploadResult,
    PendingAttachment,
    ChangeEvent,
    ChangeEventType,
    message_sort_key,
)
from chatsync.models.conversation import Conversation, message_preview
from chatsync.models.user import User

__all__ = [
    "Message",
    "MessageAttachmentType",
    "AttachmentMetadata",
    "AttachmentUploadResult",
    "PendingAttachment",
    "ChangeEvent",
    "ChangeEventType",
    "message_sort_key",
    "Conversation",
    "message_preview",
    "User",
]
