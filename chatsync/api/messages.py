"""
Direct Messages API Endpoints

HTTP surface of the message store, the conversation aggregator and the
attachment uploader for the authenticated user.
"""
from fastapi import APIRouter, HTTPException, Depends, status, File, UploadFile, Form
from typing import NoReturn
import logging

from chatsync.auth.dependencies import get_current_user
from chatsync.exceptions import ChatSyncError, RateLimitExceededError, TransportFailure
from chatsync.models.conversation import ConversationListResponse, UnreadCountResponse
from chatsync.models.message import (
    AttachmentUploadResult,
    MarkReadRequest,
    MarkReadResponse,
    Message,
    MessageAttachmentType,
    MessageCreate,
    MessageListResponse,
    MessageUpdate,
    PendingAttachment,
)
from chatsync.models.user import User
from chatsync.services.attachment_service import AttachmentUploader, get_attachment_uploader
from chatsync.services.conversation_service import ConversationAggregator, get_conversation_aggregator
from chatsync.services.message_store import MessageStore, get_message_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


# ============================================
# HELPER FUNCTIONS
# ============================================

def raise_http_error(error: ChatSyncError) -> NoReturn:
    """Translate a messaging failure into the matching HTTPException"""
    headers = None
    if isinstance(error, RateLimitExceededError) and error.retry_after:
        headers = {"Retry-After": str(error.retry_after)}

    # Backend details stay in the logs
    if isinstance(error, TransportFailure):
        detail = error.public_message
    else:
        detail = str(error) or error.public_message

    raise HTTPException(status_code=error.status_code, detail=detail, headers=headers) from error


def unexpected_error(action: str, error: Exception) -> HTTPException:
    logger.exception(f"❌ Unexpected error while trying to {action}: {error}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}"
    )


# ============================================
# CONVERSATIONS
# ============================================

@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    current_user: User = Depends(get_current_user),
    aggregator: ConversationAggregator = Depends(get_conversation_aggregator)
):
    """
    List the current user's conversations, most recently active first.

    Each row carries the counterpart's display name, a preview of the last
    message and the number of unread messages from that counterpart.
    """
    try:
        conversations = await aggregator.list_conversations(current_user.user_id)
        return ConversationListResponse(conversations=conversations, total=len(conversations))
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("list conversations", e)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    current_user: User = Depends(get_current_user),
    aggregator: ConversationAggregator = Depends(get_conversation_aggregator)
):
    """Total unread messages addressed to the current user"""
    try:
        count = await aggregator.total_unread(current_user.user_id)
        return UnreadCountResponse(unread_count=count)
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("count unread messages", e)


@router.get("/with/{counterpart_id}", response_model=MessageListResponse)
async def list_messages_with(
    counterpart_id: str,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """All messages between the current user and the counterpart, oldest first"""
    try:
        messages = await store.list_between(current_user.user_id, counterpart_id)
        return MessageListResponse(messages=messages, total=len(messages))
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("list messages", e)


@router.post("/with/{counterpart_id}/read", response_model=MarkReadResponse)
async def mark_conversation_read(
    counterpart_id: str,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """Mark every unread message from the counterpart read"""
    try:
        updated = await store.mark_conversation_read(current_user.user_id, counterpart_id)
        return MarkReadResponse(updated=updated)
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("mark conversation read", e)


# ============================================
# MESSAGES
# ============================================

@router.post("", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    message_data: MessageCreate,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """
    Send a message to another user.

    To send an attachment, upload it first via `POST /messages/attachments`
    and pass the returned object as `attachment`. `content` may be empty only
    when an attachment is present.
    """
    try:
        return await store.create(
            sender_id=current_user.user_id,
            recipient_id=message_data.recipient_id,
            content=message_data.content,
            attachment=message_data.attachment,
        )
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("send message", e)


@router.post("/attachments", response_model=AttachmentUploadResult, status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    file: UploadFile = File(..., description="Image, video or document"),
    attachment_type: MessageAttachmentType = Form(..., description="image, video or document"),
    current_user: User = Depends(get_current_user),
    uploader: AttachmentUploader = Depends(get_attachment_uploader)
):
    """
    Upload a chat attachment to the media bucket.

    The file is stored under `{user_id}/{timestamp}-{file_name}`; no message
    is created.
    """
    try:
        data = await file.read()
        pending = PendingAttachment(
            attachment_type=attachment_type,
            file_name=file.filename or "unnamed",
            mime_type=file.content_type,
            size=len(data),
            data=data,
        )
        return await uploader.upload(pending, current_user.user_id)
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("upload attachment", e)
    finally:
        await file.close()


@router.post("/read", response_model=MarkReadResponse)
async def mark_messages_read(
    request: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """Mark a batch of messages addressed to the current user read"""
    try:
        updated = await store.mark_read(request.message_ids, current_user.user_id)
        return MarkReadResponse(updated=updated)
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("mark messages read", e)


@router.patch("/{message_id}", response_model=Message)
async def edit_message(
    message_id: str,
    update_data: MessageUpdate,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """Replace the text of a message sent by the current user"""
    try:
        return await store.edit_content(message_id, current_user.user_id, update_data.content.strip())
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("edit message", e)


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: str,
    current_user: User = Depends(get_current_user),
    store: MessageStore = Depends(get_message_store)
):
    """Delete a message sent by the current user"""
    try:
        await store.delete(message_id, current_user.user_id)
    except ChatSyncError as e:
        raise_http_error(e)
    except Exception as e:
        raise unexpected_error("delete message", e)
