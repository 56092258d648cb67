"""
Message Repository

Row-level access to the messages table. Repositories do no authorization of
their own beyond the match filters they are given; the message store decides
who may do what.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from chatsync.config import settings
from chatsync.exceptions import PermissionDeniedError, TransportFailure, ValidationError
from chatsync.models.message import ChangeEvent, ChangeEventType
from chatsync.services.change_feed import LocalChangeFeed

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# Postgres error codes surfaced through PostgREST
_CHECK_VIOLATION = "23514"
_STRING_TOO_LONG = "22001"
_INSUFFICIENT_PRIVILEGE = "42501"


class MessageRepository(ABC):
    """Storage operations the message store relies on"""

    @abstractmethod
    async def insert(self, row: Row) -> Row:
        """Insert a row; the store assigns id, created_at and read=false"""

    @abstractmethod
    async def get(self, message_id: str) -> Optional[Row]:
        """Fetch one row by id"""

    @abstractmethod
    async def update(self, message_id: str, fields: Row, match: Row) -> Optional[Row]:
        """Update a row matching id and ``match``; None if nothing matched"""

    @abstractmethod
    async def delete(self, message_id: str, match: Row) -> Optional[Row]:
        """Delete a row matching id and ``match``; returns the deleted row"""

    @abstractmethod
    async def list_between(self, user_a: str, user_b: str) -> List[Row]:
        """All rows exchanged between two users, oldest first"""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Row]:
        """All rows where the user is sender or recipient, newest first"""

    @abstractmethod
    async def mark_read(self, message_ids: List[str], recipient_id: str) -> List[Row]:
        """Set read=true on unread rows among ids addressed to recipient"""

    @abstractmethod
    async def mark_conversation_read(self, sender_id: str, recipient_id: str) -> List[Row]:
        """Set read=true on every unread row from sender to recipient"""


class SupabaseMessageRepository(MessageRepository):
    """Messages table in Supabase Postgres"""

    def __init__(self, client: Optional[Client] = None, table: Optional[str] = None):
        """
        Initialize repository

        Args:
            client: Supabase client (if None, the shared service client is used)
            table: Table name (defaults to settings.MESSAGES_TABLE)
        """
        self._client = client
        self.table = table or settings.MESSAGES_TABLE

    @property
    def client(self) -> Client:
        if self._client is None:
            from chatsync.services.supabase_client import get_supabase_client
            self._client = get_supabase_client()
        return self._client

    async def _execute(self, operation: str, query) -> List[Row]:
        """Run a built query off the event loop and translate failures"""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, query.execute)
        except APIError as e:
            if e.code in (_CHECK_VIOLATION, _STRING_TOO_LONG):
                logger.warning(f"Message store rejected {operation}: {e.message}")
                raise ValidationError("Message must have text or an attachment, up to 1000 characters") from e
            if e.code == _INSUFFICIENT_PRIVILEGE:
                logger.warning(f"Row-level security denied {operation}: {e.message}")
                raise PermissionDeniedError() from e
            logger.error(f"❌ Supabase {operation} failed: {e}")
            raise TransportFailure(f"Message store unavailable ({operation})") from e
        except Exception as e:
            logger.error(f"❌ Supabase {operation} failed: {e}")
            raise TransportFailure(f"Message store unavailable ({operation})") from e

        return response.data or []

    def _table(self):
        return self.client.table(self.table)

    async def insert(self, row: Row) -> Row:
        rows = await self._execute("insert", self._table().insert(row))
        if not rows:
            raise TransportFailure("Failed to create message")
        return rows[0]

    async def get(self, message_id: str) -> Optional[Row]:
        rows = await self._execute(
            "get",
            self._table().select("*").eq("id", message_id).limit(1)
        )
        return rows[0] if rows else None

    async def update(self, message_id: str, fields: Row, match: Row) -> Optional[Row]:
        query = self._table().update(fields).eq("id", message_id)
        for column, value in match.items():
            query = query.eq(column, value)
        rows = await self._execute("update", query)
        return rows[0] if rows else None

    async def delete(self, message_id: str, match: Row) -> Optional[Row]:
        query = self._table().delete().eq("id", message_id)
        for column, value in match.items():
            query = query.eq(column, value)
        rows = await self._execute("delete", query)
        return rows[0] if rows else None

    async def list_between(self, user_a: str, user_b: str) -> List[Row]:
        query = (
            self._table()
            .select("*")
            .or_(
                f"and(sender_id.eq.{user_a},recipient_id.eq.{user_b}),"
                f"and(sender_id.eq.{user_b},recipient_id.eq.{user_a})"
            )
            .order("created_at", desc=False)
        )
        return await self._execute("list_between", query)

    async def list_for_user(self, user_id: str) -> List[Row]:
        query = (
            self._table()
            .select("*")
            .or_(f"sender_id.eq.{user_id},recipient_id.eq.{user_id}")
            .order("created_at", desc=True)
        )
        return await self._execute("list_for_user", query)

    async def mark_read(self, message_ids: List[str], recipient_id: str) -> List[Row]:
        if not message_ids:
            return []
        query = (
            self._table()
            .update({"read": True})
            .in_("id", message_ids)
            .eq("recipient_id", recipient_id)
            .eq("read", False)
        )
        return await self._execute("mark_read", query)

    async def mark_conversation_read(self, sender_id: str, recipient_id: str) -> List[Row]:
        query = (
            self._table()
            .update({"read": True})
            .eq("sender_id", sender_id)
            .eq("recipient_id", recipient_id)
            .eq("read", False)
        )
        return await self._execute("mark_conversation_read", query)


def _created_at(row: Row) -> datetime:
    return datetime.fromisoformat(row["created_at"])


class InMemoryMessageRepository(MessageRepository):
    """
    Dict-backed messages table for local runs and tests.

    Writes are serialized with a lock; every committed mutation is published to
    the attached LocalChangeFeed after the lock is released.
    """

    def __init__(
        self,
        feed: Optional[LocalChangeFeed] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._rows: Dict[str, Row] = {}
        self._lock = asyncio.Lock()
        self._feed = feed
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_created_at: Optional[datetime] = None

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def _publish(self, event: ChangeEvent) -> None:
        if self._feed is not None:
            self._feed.publish(event)

    async def insert(self, row: Row) -> Row:
        async with self._lock:
            stored = {
                "content": "",
                "attachment_url": None,
                "attachment_type": None,
                "attachment_metadata": None,
                **row,
                "id": str(uuid.uuid4()),
                "read": False,
                "created_at": self._next_timestamp().isoformat(),
            }
            self._rows[stored["id"]] = stored
            result = dict(stored)

        self._publish(ChangeEvent(event_type=ChangeEventType.INSERT, new_record=dict(result)))
        return result

    async def get(self, message_id: str) -> Optional[Row]:
        row = self._rows.get(message_id)
        return dict(row) if row else None

    async def update(self, message_id: str, fields: Row, match: Row) -> Optional[Row]:
        async with self._lock:
            row = self._rows.get(message_id)
            if row is None or any(row.get(k) != v for k, v in match.items()):
                return None
            old = dict(row)
            row.update(fields)
            result = dict(row)

        self._publish(ChangeEvent(event_type=ChangeEventType.UPDATE, new_record=dict(result), old_record=old))
        return result

    async def delete(self, message_id: str, match: Row) -> Optional[Row]:
        async with self._lock:
            row = self._rows.get(message_id)
            if row is None or any(row.get(k) != v for k, v in match.items()):
                return None
            del self._rows[message_id]

        self._publish(ChangeEvent(event_type=ChangeEventType.DELETE, old_record=dict(row)))
        return dict(row)

    async def list_between(self, user_a: str, user_b: str) -> List[Row]:
        rows = [
            dict(row) for row in self._rows.values()
            if (row["sender_id"], row["recipient_id"]) in ((user_a, user_b), (user_b, user_a))
        ]
        return sorted(rows, key=lambda r: (_created_at(r), r["id"]))

    async def list_for_user(self, user_id: str) -> List[Row]:
        rows = [
            dict(row) for row in self._rows.values()
            if user_id in (row["sender_id"], row["recipient_id"])
        ]
        return sorted(rows, key=lambda r: (_created_at(r), r["id"]), reverse=True)

    async def _mark(self, predicate: Callable[[Row], bool]) -> List[Row]:
        changed: List[tuple] = []
        async with self._lock:
            for row in self._rows.values():
                if not row["read"] and predicate(row):
                    old = dict(row)
                    row["read"] = True
                    changed.append((old, dict(row)))

        for old, new in changed:
            self._publish(ChangeEvent(event_type=ChangeEventType.UPDATE, new_record=dict(new), old_record=old))
        return [new for _, new in changed]

    async def mark_read(self, message_ids: List[str], recipient_id: str) -> List[Row]:
        wanted = set(message_ids)
        return await self._mark(lambda row: row["id"] in wanted and row["recipient_id"] == recipient_id)

    async def mark_conversation_read(self, sender_id: str, recipient_id: str) -> List[Row]:
        return await self._mark(
            lambda row: row["sender_id"] == sender_id and row["recipient_id"] == recipient_id
        )

    def __len__(self) -> int:
        return len(self._rows)


# Global repository instance
_repository: Optional[MessageRepository] = None


def get_message_repository() -> MessageRepository:
    """Get or create global message repository for the configured backend"""
    global _repository
    if _repository is None:
        if settings.use_memory_backend:
            from chatsync.services.change_feed import get_change_feed
            feed = get_change_feed()
            _repository = InMemoryMessageRepository(feed=feed if isinstance(feed, LocalChangeFeed) else None)
            logger.info("Using in-memory message repository")
        else:
            _repository = SupabaseMessageRepository()
    return _repository
