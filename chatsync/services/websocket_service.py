"""
WebSocket Service
Manages WebSocket connections and fans message changes out to the two
participants of each conversation.
"""
from fastapi import WebSocket
from typing import Dict, List, Set
import logging
from datetime import datetime

from chatsync.models.message import ChangeEvent

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections per user.

    A user may hold several connections (several devices or tabs); each
    message change is delivered only to the sender's and recipient's
    connections.
    """

    def __init__(self):
        """Initialize connection manager"""
        # Structure: {user_id: Set[WebSocket]}
        self.active_connections: Dict[str, Set[WebSocket]] = {}

        # Structure: {WebSocket: {"user_id": str, "connected_at": datetime}}
        self.connection_metadata: Dict[WebSocket, Dict] = {}

    async def connect(self, websocket: WebSocket, user_id: str):
        """
        Register a new WebSocket connection.

        Note: WebSocket must already be accepted before calling this method.

        Args:
            websocket: WebSocket connection instance (already accepted)
            user_id: Authenticated user id
        """
        self.active_connections.setdefault(user_id, set()).add(websocket)
        self.connection_metadata[websocket] = {
            "user_id": user_id,
            "connected_at": datetime.utcnow()
        }

        logger.info(
            f"✅ WebSocket connected: user={user_id}, "
            f"user_connections={len(self.active_connections[user_id])}"
        )

    def disconnect(self, websocket: WebSocket):
        """Remove WebSocket connection from active connections"""
        metadata = self.connection_metadata.pop(websocket, {})
        user_id = metadata.get("user_id")

        if user_id and user_id in self.active_connections:
            self.active_connections[user_id].discard(websocket)
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]

        if user_id:
            logger.info(
                f"🔌 WebSocket disconnected: user={user_id}, "
                f"remaining_connections={len(self.active_connections.get(user_id, []))}"
            )

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        """
        Send message to specific WebSocket connection.

        Args:
            message: Message dictionary to send
            websocket: Target WebSocket connection
        """
        if websocket not in self.connection_metadata:
            logger.warning("Attempted to send message to unregistered WebSocket")
            return

        try:
            await websocket.send_json(message)
            logger.debug(f"📤 Sent personal message: type={message.get('type')}")
        except RuntimeError as e:
            # "WebSocket is not connected"
            logger.error(f"❌ WebSocket not connected: {e}")
            self.disconnect(websocket)
        except Exception as e:
            logger.error(f"❌ Failed to send personal message: {e}")
            self.disconnect(websocket)

    async def send_to_user(self, message: dict, user_id: str) -> int:
        """
        Send message to every connection of one user.

        Returns:
            Number of connections that received the message
        """
        connections = list(self.active_connections.get(user_id, ()))
        if not connections:
            return 0

        success_count = 0
        failed_connections = []
        for connection in connections:
            try:
                await connection.send_json(message)
                success_count += 1
            except Exception as e:
                logger.error(f"❌ Failed to send to connection of user {user_id}: {e}")
                failed_connections.append(connection)

        for failed in failed_connections:
            self.disconnect(failed)

        return success_count

    async def broadcast_message_event(self, event: ChangeEvent):
        """
        Forward a message change to both participants.

        Deletes whose payload carries only the id cannot be routed and are
        skipped; clients converge on their next poll.
        """
        participants = event.participants
        if participants is None:
            logger.debug(f"Skipping {event.event_type.value} event without participants: {event.record_id}")
            return

        notification = {
            "type": f"message_{event.event_type.value}",
            "timestamp": datetime.utcnow().isoformat(),
            "data": {
                "message_id": event.record_id,
                "record": event.new_record,
                "old_record": event.old_record,
            }
        }

        sent = 0
        for user_id in dict.fromkeys(participants):
            sent += await self.send_to_user(notification, user_id)

        logger.debug(f"📢 Fanned out {notification['type']} {event.record_id} to {sent} connections")

    def get_connection_count(self, user_id: str = None) -> int:
        """
        Get number of active connections.

        Args:
            user_id: Optional user id to filter by

        Returns:
            Count of active connections
        """
        if user_id:
            return len(self.active_connections.get(user_id, set()))
        return sum(len(connections) for connections in self.active_connections.values())

    def get_connected_users(self) -> List[str]:
        return list(self.active_connections.keys())


# Singleton instance
connection_manager = ConnectionManager()


def get_connection_manager() -> ConnectionManager:
    """
    Get the global ConnectionManager singleton instance.

    Returns:
        ConnectionManager instance
    """
    return connection_manager
