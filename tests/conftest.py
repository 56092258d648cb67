import itertools
import os

# Configure before anything imports chatsync.config
os.environ["CHATSYNC_BACKEND"] = "memory"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["WEBSOCKET_ENABLED"] = "true"

import pytest

from chatsync.services.attachment_service import AttachmentUploader
from chatsync.services.change_feed import LocalChangeFeed
from chatsync.services.conversation_service import ConversationAggregator
from chatsync.services.message_repository import InMemoryMessageRepository
from chatsync.services.message_store import MessageStore
from chatsync.services.profile_service import StaticProfileDirectory
from chatsync.services.storage_service import InMemoryObjectStorage

USER_A = "user-a"
USER_B = "user-b"
USER_C = "user-c"


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def repository(feed):
    return InMemoryMessageRepository(feed=feed)


@pytest.fixture
def store(repository):
    return MessageStore(repository)


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def uploader(storage):
    # Distinct millisecond timestamps so uploads of the same name never collide
    ticks = itertools.count(1732622400000)
    return AttachmentUploader(storage, clock=lambda: next(ticks) / 1000)


@pytest.fixture
def profiles():
    return StaticProfileDirectory({USER_A: "Acme Robotics", USER_B: "Jane Investor"})


@pytest.fixture
def aggregator(store, profiles):
    return ConversationAggregator(store, profiles)
