"""
Conversation Models

Derived per-user conversation rows. Nothing here is persisted.
"""
from typing import List
from pydantic import BaseModel, Field
from datetime import datetime

from chatsync.models.message import Message, MessageAttachmentType


ATTACHMENT_PREVIEWS = {
    MessageAttachmentType.IMAGE: "📷 Photo",
    MessageAttachmentType.VIDEO: "🎥 Video",
    MessageAttachmentType.DOCUMENT: "📄 Document",
}
DEFAULT_PREVIEW = "New message"
UNKNOWN_USER_LABEL = "User"


def message_preview(message: Message) -> str:
    """Text shown in the conversation list for a message"""
    if message.content and message.content.strip():
        return message.content
    if message.attachment_type is not None:
        return ATTACHMENT_PREVIEWS[message.attachment_type]
    return DEFAULT_PREVIEW


class Conversation(BaseModel):
    """One row of a user's conversation list, keyed by the other participant"""
    counterpart_id: str = Field(..., description="The other participant")
    counterpart_name: str = Field(UNKNOWN_USER_LABEL, description="Resolved display name")
    last_message: str = Field(..., description="Preview of the most recent message")
    last_message_id: str = Field(..., description="Id of the most recent message")
    last_message_time: datetime = Field(..., description="Timestamp of the most recent message")
    unread_count: int = Field(0, ge=0, description="Unread messages from the counterpart")

    class Config:
        json_schema_extra = {
            "example": {
                "counterpart_id": "user-b",
                "counterpart_name": "Acme Robotics",
                "last_message": "📷 Photo",
                "last_message_id": "9b2f6a0e-4a52-4df5-9a55-0f5d1b1f8a11",
                "last_message_time": "2025-11-26T12:00:00Z",
                "unread_count": 2
            }
        }


class ConversationListResponse(BaseModel):
    """Schema for a user's conversation list"""
    conversations: List[Conversation]
    total: int = Field(..., description="Number of conversations")


class UnreadCountResponse(BaseModel):
    """Schema for the total unread badge"""
    unread_count: int = Field(..., ge=0)
