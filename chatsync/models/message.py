"""
Direct Message Models

Pydantic models for messages, attachments and change-feed events.
"""
from typing import Optional, List, Dict, Any, Tuple
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from enum import Enum


_TRUE_STRINGS = {"true", "t", "1", "yes", "y"}


class MessageAttachmentType(str, Enum):
    """Kind of file attached to a message"""
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


class AttachmentMetadata(BaseModel):
    """Descriptive metadata stored alongside an attachment url"""
    file_name: Optional[str] = Field(None, description="Original file name")
    file_size: Optional[int] = Field(None, description="Size in bytes")
    mime_type: Optional[str] = Field(None, description="MIME type of the stored object")


class AttachmentUploadResult(BaseModel):
    """Stored attachment, ready to be referenced by exactly one message"""
    attachment_url: str = Field(..., description="Public url of the stored object")
    attachment_type: MessageAttachmentType = Field(..., description="Attachment kind")
    attachment_metadata: AttachmentMetadata = Field(default_factory=AttachmentMetadata)
    storage_path: Optional[str] = Field(None, description="Object path inside the media bucket")

    class Config:
        json_schema_extra = {
            "example": {
                "attachment_url": "https://project.supabase.co/storage/v1/object/public/chat-media/user-uuid/1732622400000-photo.jpg",
                "attachment_type": "image",
                "attachment_metadata": {
                    "file_name": "photo.jpg",
                    "file_size": 183422,
                    "mime_type": "image/jpeg"
                },
                "storage_path": "user-uuid/1732622400000-photo.jpg"
            }
        }

    def to_row(self) -> Dict[str, Any]:
        return {
            "attachment_url": self.attachment_url,
            "attachment_type": self.attachment_type.value,
            "attachment_metadata": self.attachment_metadata.model_dump(exclude_none=True),
        }


class PendingAttachment(BaseModel):
    """
    A locally selected file that has not been uploaded yet.

    Either ``uri`` (local path, file:// uri or http(s) url) or ``data`` must be
    provided.
    """
    attachment_type: MessageAttachmentType
    file_name: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    uri: Optional[str] = None
    data: Optional[bytes] = Field(None, repr=False)


class Message(BaseModel):
    """A direct message row"""
    id: str = Field(..., description="Message id")
    sender_id: str = Field(..., description="Sender user id")
    recipient_id: str = Field(..., description="Recipient user id")
    content: str = Field("", description="Message text, up to 1000 characters")
    read: bool = Field(False, description="Set by the recipient once seen")
    created_at: datetime = Field(..., description="Creation timestamp")
    attachment_url: Optional[str] = None
    attachment_type: Optional[MessageAttachmentType] = None
    attachment_metadata: Optional[AttachmentMetadata] = None

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": "9b2f6a0e-4a52-4df5-9a55-0f5d1b1f8a11",
                "sender_id": "user-a",
                "recipient_id": "user-b",
                "content": "hello",
                "read": False,
                "created_at": "2025-11-26T12:00:00Z",
                "attachment_url": None,
                "attachment_type": None,
                "attachment_metadata": None
            }
        }

    @field_validator("content", mode="before")
    @classmethod
    def _normalize_content(cls, value):
        return "" if value is None else value

    @field_validator("read", mode="before")
    @classmethod
    def _normalize_read(cls, value):
        # Storage layers and realtime payloads do not always send native booleans
        if value is None:
            return False
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_STRINGS
        return bool(value)

    @field_validator("attachment_type", mode="before")
    @classmethod
    def _normalize_attachment_type(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    @property
    def has_attachment(self) -> bool:
        return self.attachment_url is not None

    def involves(self, user_a: str, user_b: str) -> bool:
        """True if this message belongs to the conversation between the two users"""
        return (
            (self.sender_id == user_a and self.recipient_id == user_b)
            or (self.sender_id == user_b and self.recipient_id == user_a)
        )

    def counterpart_of(self, user_id: str) -> str:
        return self.recipient_id if self.sender_id == user_id else self.sender_id


def message_sort_key(message: Message) -> Tuple[datetime, str]:
    """Conversation ordering: created_at, ties broken by id"""
    return message.created_at, message.id


# Request Models

class MessageCreate(BaseModel):
    """Schema for sending a message"""
    recipient_id: str = Field(..., min_length=1, description="Recipient user id")
    content: str = Field("", description="Message text")
    attachment: Optional[AttachmentUploadResult] = Field(
        None,
        description="Result of a prior attachment upload"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "recipient_id": "user-b",
                "content": "hello",
                "attachment": None
            }
        }


class MessageUpdate(BaseModel):
    """Schema for editing message content"""
    content: str = Field(..., description="New message text")


class MarkReadRequest(BaseModel):
    """Schema for marking a batch of messages read"""
    message_ids: List[str] = Field(..., min_length=1, description="Message ids to mark read")


# Response Models

class MessageListResponse(BaseModel):
    """Schema for the messages of one conversation"""
    messages: List[Message]
    total: int = Field(..., description="Total number of messages")


class MarkReadResponse(BaseModel):
    """Schema for mark-read results"""
    updated: int = Field(..., description="Number of messages newly marked read")


# Change feed

class ChangeEventType(str, Enum):
    """Row-level change kinds delivered by the change feed"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """
    A row-level change on the messages table.

    ``old_record`` of a delete may carry only the primary key, depending on the
    table's replica identity.
    """
    event_type: ChangeEventType
    new_record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None

    @field_validator("event_type", mode="before")
    @classmethod
    def _normalize_event_type(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def record_id(self) -> Optional[str]:
        for record in (self.new_record, self.old_record):
            if record and record.get("id"):
                return str(record["id"])
        return None

    @property
    def participants(self) -> Optional[Tuple[str, str]]:
        """(sender_id, recipient_id) when the payload carries them"""
        record = self.new_record or self.old_record or {}
        sender_id = record.get("sender_id")
        recipient_id = record.get("recipient_id")
        if sender_id and recipient_id:
            return str(sender_id), str(recipient_id)
        return None

    def message(self) -> Message:
        """Parse the new row. Raises pydantic.ValidationError on malformed rows."""
        return Message.model_validate(self.new_record or {})

    @classmethod
    def from_message(
        cls,
        event_type: ChangeEventType,
        message: Message,
        old: Optional[Message] = None
    ) -> "ChangeEvent":
        row = message.model_dump(mode="json")
        if event_type is ChangeEventType.DELETE:
            return cls(event_type=event_type, old_record=row)
        return cls(
            event_type=event_type,
            new_record=row,
            old_record=old.model_dump(mode="json") if old else None
        )
