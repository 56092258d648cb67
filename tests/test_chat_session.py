import asyncio
from typing import List, Optional

import pytest

from chatsync.exceptions import NotFoundError, PermissionDeniedError, TransportFailure, ValidationError
from chatsync.models.message import MessageAttachmentType, PendingAttachment
from chatsync.services.attachment_service import AttachmentUploader
from chatsync.services.change_feed import LocalChangeFeed
from chatsync.services.chat_session import ChatSession
from chatsync.services.message_repository import InMemoryMessageRepository
from chatsync.services.message_store import MessageStore
from chatsync.services.storage_service import InMemoryObjectStorage, ObjectStorage

from conftest import USER_A, USER_B, USER_C


class UnavailableStorage(ObjectStorage):
    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise TransportFailure("storage offline")

    async def remove(self, paths: List[str]) -> None:
        pass


class BrokenStorage(UnavailableStorage):
    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise RuntimeError("unexpected storage reply")


class GatedStorage(InMemoryObjectStorage):
    """Holds every upload until the gate opens"""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        await self.gate.wait()
        return await super().put(path, data, content_type)


class RejectingRepository(InMemoryMessageRepository):
    async def insert(self, row):
        raise TransportFailure("store offline")


def photo() -> PendingAttachment:
    return PendingAttachment(
        attachment_type=MessageAttachmentType.IMAGE,
        file_name="photo.jpg",
        mime_type="image/jpeg",
        data=b"\xff\xd8\xff",
    )


@pytest.fixture
async def session(store, uploader, feed):
    chat = ChatSession(USER_A, USER_B, store, uploader, feed, poll_interval=0)
    yield chat
    await chat.close()


async def wait_for(condition, attempts: int = 200):
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestOpen:
    async def test_loads_history_and_marks_inbound_read(self, store, aggregator, session):
        for text in ("one", "two", "three"):
            await store.create(USER_B, USER_A, text)
        await store.create(USER_A, USER_C, "elsewhere")

        messages = await session.open()

        assert [m.content for m in messages] == ["one", "two", "three"]
        assert all(m.read for m in messages)
        assert await aggregator.unread_count(USER_A, USER_B) == 0

    async def test_open_twice_keeps_one_subscription(self, feed, session):
        await session.open()
        await session.open()

        assert feed.subscription_count() == 1
        assert session.channel_name == "chat-user-a-user-b"


class TestSend:
    async def test_send_text(self, repository, feed, session):
        await session.open()

        message = await session.send("hello")
        await feed.drain()

        assert message.content == "hello"
        assert [m.id for m in session.messages] == [message.id]
        assert session.composer.text == ""
        assert len(repository) == 1

    async def test_send_trims_and_uses_composer(self, session):
        await session.open()
        session.set_text("  hi there  ")

        message = await session.send()

        assert message.content == "hi there"

    async def test_send_attachment_only(self, storage, session):
        await session.open()

        message = await session.send("", photo())

        assert message.content == ""
        assert message.attachment_type is MessageAttachmentType.IMAGE
        assert message.attachment_url.startswith("memory://chat-media/user-a/")
        assert len(storage.objects) == 1
        assert session.composer.pending_attachment is None

    async def test_empty_message_rejected(self, repository, session):
        await session.open()

        with pytest.raises(ValidationError):
            await session.send("   ")

        assert len(repository) == 0
        assert session.messages == []

    async def test_upload_failure_creates_nothing_and_keeps_composer(self, store, feed, repository):
        uploader = AttachmentUploader(UnavailableStorage())
        session = ChatSession(USER_A, USER_B, store, uploader, feed, poll_interval=0)
        await session.open()
        attachment = photo()

        with pytest.raises(TransportFailure):
            await session.send("look", attachment)

        assert len(repository) == 0
        assert session.messages == []
        assert session.composer.text == "look"
        assert session.composer.pending_attachment == attachment
        assert isinstance(session.last_error, TransportFailure)
        assert not session.is_sending
        await session.close()

    async def test_create_failure_discards_upload(self, uploader, storage, feed):
        store = MessageStore(RejectingRepository(feed=feed))
        session = ChatSession(USER_A, USER_B, store, uploader, feed, poll_interval=0)
        await session.open()

        with pytest.raises(TransportFailure):
            await session.send("look", photo())

        assert storage.objects == {}
        assert session.messages == []
        assert session.composer.pending_attachment is not None
        await session.close()

    async def test_unexpected_failure_rolls_back_placeholder(self, store, feed, repository):
        session = ChatSession(USER_A, USER_B, store, AttachmentUploader(BrokenStorage()), feed, poll_interval=0)
        await session.open()

        with pytest.raises(RuntimeError):
            await session.send("look", photo())

        assert session.messages == []
        assert len(repository) == 0
        assert session.composer.text == "look"
        assert not session.is_sending
        await session.close()

    async def test_single_flight(self, store, feed, repository):
        storage = GatedStorage()
        session = ChatSession(USER_A, USER_B, store, AttachmentUploader(storage), feed, poll_interval=0)
        await session.open()

        first = asyncio.create_task(session.send("first", photo()))
        await wait_for(lambda: session.is_sending)

        assert len(session.messages) == 1
        assert session.cache.is_pending(session.messages[0].id)
        session.set_text("second")
        assert await session.send() is None
        assert await session.send("third") is None
        assert session.composer.text == "second"

        storage.gate.set()
        message = await first

        assert message is not None
        assert len(repository) == 1
        assert [m.id for m in session.messages] == [message.id]
        assert session.composer.text == "second"
        assert session.composer.pending_attachment is None
        await session.close()


class TestRealtime:
    async def test_inbound_message_appears_and_is_marked_read(self, store, feed, session):
        await session.open()

        inbound = await store.create(USER_B, USER_A, "hey")
        await feed.drain()

        assert [m.id for m in session.messages] == [inbound.id]
        assert session.messages[0].read is True
        assert (await store.get(inbound.id)).read is True

    async def test_other_conversations_ignored(self, store, feed, session):
        await session.open()

        await store.create(USER_C, USER_A, "not this chat")
        await store.create(USER_B, USER_C, "nor this")
        await feed.drain()

        assert session.messages == []

    async def test_counterpart_edit_and_delete_propagate(self, store, feed, session):
        message = await store.create(USER_B, USER_A, "helo")
        await session.open()

        await store.edit_content(message.id, USER_B, "hello")
        await feed.drain()
        assert session.messages[0].content == "hello"

        await store.delete(message.id, USER_B)
        await feed.drain()
        assert session.messages == []

    async def test_fallback_poll_picks_up_missed_messages(self, uploader):
        # Repository without a feed: only the poll can see new rows
        store = MessageStore(InMemoryMessageRepository())
        session = ChatSession(USER_A, USER_B, store, uploader, LocalChangeFeed(), poll_interval=0.01)
        await session.open()

        inbound = await store.create(USER_B, USER_A, "missed by realtime")
        await wait_for(lambda: [m.id for m in session.messages] == [inbound.id])

        await session.close()

    async def test_poll_survives_transport_failure(self, uploader, monkeypatch):
        store = MessageStore(InMemoryMessageRepository())
        session = ChatSession(USER_A, USER_B, store, uploader, LocalChangeFeed(), poll_interval=0.01)
        await session.open()

        original = store.list_between
        calls = {"count": 0}

        async def flaky(user_a, user_b):
            calls["count"] += 1
            if calls["count"] == 1:
                raise TransportFailure("store offline")
            return await original(user_a, user_b)

        monkeypatch.setattr(store, "list_between", flaky)
        await store.create(USER_B, USER_A, "after outage")

        await wait_for(lambda: len(session.messages) == 1)
        assert calls["count"] >= 2
        await session.close()


class TestEditDelete:
    async def test_edit_own_message(self, session):
        await session.open()
        message = await session.send("helo")

        edited = await session.edit(message.id, "  hello ")

        assert edited.content == "hello"
        assert session.cache.get(message.id).content == "hello"

    async def test_cannot_edit_counterpart_message(self, store, session):
        theirs = await store.create(USER_B, USER_A, "hello")
        await session.open()

        with pytest.raises(PermissionDeniedError):
            await session.edit(theirs.id, "changed")

        assert (await store.get(theirs.id)).content == "hello"

    async def test_empty_edit_rejected(self, session):
        await session.open()
        message = await session.send("hello")

        with pytest.raises(ValidationError):
            await session.edit(message.id, "   ")

        assert session.cache.get(message.id).content == "hello"

    async def test_edit_of_message_deleted_elsewhere(self, store, session):
        await session.open()
        message = await session.send("hello")
        await store.delete(message.id, USER_A)

        with pytest.raises(NotFoundError):
            await session.edit(message.id, "changed")

    async def test_delete_own_message(self, store, feed, session):
        await session.open()
        message = await session.send("oops")

        await session.delete(message.id)
        await feed.drain()

        assert session.messages == []
        assert await store.get(message.id) is None

    async def test_cannot_delete_counterpart_message(self, store, session):
        theirs = await store.create(USER_B, USER_A, "hello")
        await session.open()

        with pytest.raises(PermissionDeniedError):
            await session.delete(theirs.id)

        assert await store.get(theirs.id) is not None


class TestComposer:
    async def test_editing_flow(self, session):
        await session.open()
        message = await session.send("helo")

        session.start_editing(message.id)
        assert session.composer.editing_message_id == message.id
        assert session.composer.text == "helo"

        with pytest.raises(ValidationError):
            session.attach(photo())

        session.set_text("hello")
        edited = await session.submit()

        assert edited.content == "hello"
        assert session.composer.editing_message_id is None
        assert session.composer.text == ""

    async def test_cancel_editing(self, session):
        await session.open()
        message = await session.send("hello")

        session.start_editing(message.id)
        session.cancel_editing()
        session.attach(photo())

        assert session.composer.editing_message_id is None
        assert session.composer.pending_attachment is not None

    async def test_submit_sends_when_not_editing(self, session):
        await session.open()
        session.set_text("hello")

        message = await session.submit()

        assert message.content == "hello"

    async def test_can_modify_only_own_confirmed_messages(self, store, session):
        theirs = await store.create(USER_B, USER_A, "hi")
        await session.open()
        mine = await session.send("hello")
        pending = session.cache.add_pending("in flight")

        assert session.can_modify(mine)
        assert not session.can_modify(session.cache.get(theirs.id))
        assert not session.can_modify(pending)


class TestClose:
    async def test_close_releases_everything(self, store, feed, session):
        await session.open()
        await session.send("hello")

        await session.close()
        await store.create(USER_B, USER_A, "after close")
        await feed.drain()

        assert not session.is_open
        assert session.messages == []
        assert feed.subscription_count() == 0
