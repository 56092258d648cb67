"""
Message Cache

Local ordered copy of one conversation. Change-feed events and poll results
are both reconciled here, keyed by message id, so applying the same logical
change twice leaves the cache as applying it once.
"""
import bisect
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from chatsync.models.message import ChangeEvent, ChangeEventType, Message, message_sort_key

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


class MessageCache:
    """
    Confirmed messages in (created_at, id) order, followed by optimistic
    pending messages in the order they were sent.
    """

    def __init__(self, self_id: str, counterpart_id: str):
        self.self_id = self_id
        self.counterpart_id = counterpart_id
        self._confirmed: List[Message] = []
        self._pending: Dict[str, Message] = {}

    # ============ Queries ============

    @property
    def messages(self) -> List[Message]:
        return self._confirmed + list(self._pending.values())

    @property
    def confirmed(self) -> List[Message]:
        return list(self._confirmed)

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def __contains__(self, message_id: str) -> bool:
        return self.get(message_id) is not None

    def get(self, message_id: str) -> Optional[Message]:
        if message_id in self._pending:
            return self._pending[message_id]
        index = self._index_of(message_id)
        return self._confirmed[index] if index is not None else None

    def is_pending(self, message_id: str) -> bool:
        return message_id in self._pending

    def is_relevant(self, sender_id: str, recipient_id: str) -> bool:
        """True if a (sender, recipient) pair belongs to this conversation"""
        return (
            (sender_id == self.self_id and recipient_id == self.counterpart_id)
            or (sender_id == self.counterpart_id and recipient_id == self.self_id)
        )

    def _index_of(self, message_id: str) -> Optional[int]:
        for index, message in enumerate(self._confirmed):
            if message.id == message_id:
                return index
        return None

    # ============ Confirmed messages ============

    def upsert(self, message: Message) -> bool:
        """Insert a confirmed message, or replace it in place if already known"""
        index = self._index_of(message.id)
        if index is not None:
            if self._confirmed[index] == message:
                return False
            self._confirmed[index] = message
            return True
        bisect.insort(self._confirmed, message, key=message_sort_key)
        return True

    def remove(self, message_id: str) -> bool:
        index = self._index_of(message_id)
        if index is None:
            return False
        del self._confirmed[index]
        return True

    def mark_inbound_read(self) -> int:
        """Set read on every cached message from the counterpart"""
        changed = 0
        for index, message in enumerate(self._confirmed):
            if message.sender_id == self.counterpart_id and not message.read:
                self._confirmed[index] = message.model_copy(update={"read": True})
                changed += 1
        return changed

    def resync(self, messages: List[Message]) -> None:
        """Replace confirmed messages with an authoritative snapshot; pending ones survive"""
        relevant = [m for m in messages if self.is_relevant(m.sender_id, m.recipient_id)]
        self._confirmed = sorted(relevant, key=message_sort_key)

    def clear(self) -> None:
        self._confirmed = []
        self._pending = {}

    # ============ Optimistic sends ============

    def add_pending(self, content: str) -> Message:
        """Append a not-yet-confirmed outbound message under a temporary id"""
        message = Message(
            id=f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}",
            sender_id=self.self_id,
            recipient_id=self.counterpart_id,
            content=content,
            read=False,
            created_at=datetime.now(timezone.utc),
        )
        self._pending[message.id] = message
        return message

    def confirm_pending(self, local_id: str, message: Message) -> None:
        """Replace a pending message by its server-confirmed record"""
        self._pending.pop(local_id, None)
        # The feed echo may already have inserted the server record
        if self._index_of(message.id) is None:
            bisect.insort(self._confirmed, message, key=message_sort_key)

    def rollback_pending(self, local_id: str) -> bool:
        return self._pending.pop(local_id, None) is not None

    # ============ Reconciliation ============

    def apply(self, event: ChangeEvent) -> bool:
        """
        Reconcile one change-feed event.

        Returns:
            True if the cache changed
        """
        if event.event_type is ChangeEventType.DELETE:
            return self._apply_delete(event)

        try:
            message = event.message()
        except PydanticValidationError as e:
            logger.debug(f"Ignoring malformed {event.event_type.value} event: {e.error_count()} errors")
            return False

        if not self.is_relevant(message.sender_id, message.recipient_id):
            logger.debug(f"Ignoring {event.event_type.value} for another conversation: {message.id}")
            return False

        if event.event_type is ChangeEventType.INSERT:
            if self._index_of(message.id) is not None:
                return False
            bisect.insort(self._confirmed, message, key=message_sort_key)
            return True

        # Update: merge into the known message without moving it
        index = self._index_of(message.id)
        if index is None:
            return False
        current = self._confirmed[index]
        merged = Message.model_validate({**current.model_dump(), **(event.new_record or {})})
        if merged == current:
            return False
        self._confirmed[index] = merged
        return True

    def _apply_delete(self, event: ChangeEvent) -> bool:
        message_id = event.record_id
        if not message_id:
            logger.debug("Ignoring delete event without an id")
            return False

        participants = event.participants
        if participants is not None and not self.is_relevant(*participants):
            return False

        return self.remove(message_id)
