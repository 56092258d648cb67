"""
WebSocket API Endpoint
Real-time delivery of message changes and conversation list updates
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status
import asyncio
import json
import logging
from datetime import datetime
from typing import List, Optional

from chatsync.auth.jwt_handler import extract_user_from_token, JWTValidationError
from chatsync.config import settings
from chatsync.exceptions import ChatSyncError
from chatsync.models.conversation import Conversation
from chatsync.models.user import User
from chatsync.services.conversation_service import watch_conversations
from chatsync.services.websocket_service import get_connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

KEEPALIVE_SECONDS = 30.0


async def authenticate_websocket(websocket: WebSocket, token: Optional[str]) -> Optional[User]:
    """
    Verify the query-string token before accepting the socket.

    Closes the socket with a policy violation and returns None when the token
    is missing or invalid.
    """
    if not settings.WEBSOCKET_ENABLED:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    if not token:
        logger.warning("WebSocket connection attempt without token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    try:
        user = extract_user_from_token(token)
    except JWTValidationError as e:
        logger.warning(f"Invalid WebSocket token: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    logger.info(f"✅ WebSocket token verified for user {user.user_id}")
    return user


async def keepalive_loop(websocket: WebSocket, user_id: str):
    """
    Answer client pings and ping idle clients until the socket goes away.

    Message changes are pushed from elsewhere; inbound frames are only used
    for keepalive.
    """
    while True:
        try:
            data = await asyncio.wait_for(websocket.receive_text(), timeout=KEEPALIVE_SECONDS)
        except asyncio.TimeoutError:
            try:
                await websocket.send_json({
                    "type": "ping",
                    "timestamp": datetime.utcnow().isoformat(),
                    "message": "keepalive"
                })
                logger.debug(f"🏓 Sent keepalive ping to user={user_id}")
            except Exception as ping_error:
                logger.error(f"Failed to send ping: {ping_error}")
                break
            continue
        except WebSocketDisconnect:
            logger.info(f"WebSocket client disconnected: user={user_id}")
            break

        try:
            message_type = json.loads(data).get("type", "")
        except (json.JSONDecodeError, AttributeError):
            logger.debug(f"Ignoring non-JSON frame from user={user_id}")
            continue

        if message_type == "ping":
            await websocket.send_json({
                "type": "pong",
                "timestamp": datetime.utcnow().isoformat()
            })
            logger.debug(f"🏓 Sent pong response to user={user_id}")
        elif message_type == "pong":
            logger.debug(f"🏓 Received pong from user={user_id}")


@router.websocket("/ws/messages")
async def messages_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Supabase access token")
):
    """
    WebSocket endpoint for message change events.

    **Connection URL:**
    ```
    ws://your-api.com/ws/messages?token={jwt_token}
    ```

    **Message Types Received:**
    ```json
    {
        "type": "message_insert",
        "timestamp": "2025-11-26T12:00:00",
        "data": {
            "message_id": "msg-uuid",
            "record": {"id": "msg-uuid", "sender_id": "user-a", "recipient_id": "user-b", "...": "..."},
            "old_record": null
        }
    }
    ```
    `type` is one of `message_insert`, `message_update`, `message_delete`.
    Only changes to messages the user sent or received are delivered.
    """
    user = await authenticate_websocket(websocket, token)
    if user is None:
        return

    connection_manager = get_connection_manager()
    await websocket.accept()
    await connection_manager.connect(websocket, user.user_id)

    try:
        await connection_manager.send_personal_message(
            {
                "type": "connection_established",
                "user_id": user.user_id,
                "connection_count": connection_manager.get_connection_count(user.user_id)
            },
            websocket
        )
        await keepalive_loop(websocket, user.user_id)
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: user={user.user_id}")
    except Exception as e:
        logger.error(f"Unexpected error in WebSocket endpoint: {e}")
    finally:
        connection_manager.disconnect(websocket)


@router.websocket("/ws/conversations")
async def conversations_websocket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Supabase access token")
):
    """
    WebSocket endpoint streaming the user's conversation list.

    Sends `{"type": "conversations", "data": [...]}` once on connect and again
    whenever a message the user sent or received changes.
    """
    user = await authenticate_websocket(websocket, token)
    if user is None:
        return

    await websocket.accept()

    async def push(conversations: List[Conversation]) -> None:
        await websocket.send_json({
            "type": "conversations",
            "timestamp": datetime.utcnow().isoformat(),
            "data": [c.model_dump(mode="json") for c in conversations]
        })

    watcher = None
    try:
        watcher = await watch_conversations(user.user_id, push)
        await push(watcher.conversations)
        await keepalive_loop(websocket, user.user_id)
    except ChatSyncError as e:
        logger.error(f"❌ Conversation watcher failed for user={user.user_id}: {e}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
    except WebSocketDisconnect:
        logger.info(f"Conversation WebSocket disconnected: user={user.user_id}")
    except Exception as e:
        logger.error(f"Unexpected error in conversation WebSocket: {e}")
    finally:
        if watcher is not None:
            await watcher.close()


@router.get(
    "/ws/stats",
    summary="Get WebSocket connection statistics",
    description="Get statistics about active message WebSocket connections"
)
async def get_websocket_stats():
    """
    Get WebSocket connection statistics.

    **Response Example:**
    ```json
    {
        "total_connections": 4,
        "users_with_connections": 3
    }
    ```
    """
    connection_manager = get_connection_manager()

    stats = {
        "total_connections": connection_manager.get_connection_count(),
        "users_with_connections": len(connection_manager.get_connected_users())
    }

    logger.info(f"📊 WebSocket stats requested: {stats}")
    return stats
