from typing import List, Optional

import pytest

from chatsync.exceptions import RateLimitExceededError, TransportFailure, ValidationError
from chatsync.models.message import MessageAttachmentType, PendingAttachment
from chatsync.services.attachment_service import AttachmentUploader
from chatsync.services.rate_limiter import InMemoryRateLimiter
from chatsync.services.storage_service import InMemoryObjectStorage, ObjectStorage

from conftest import USER_A


class UnavailableStorage(ObjectStorage):
    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        raise TransportFailure("storage offline")

    async def remove(self, paths: List[str]) -> None:
        raise TransportFailure("storage offline")


@pytest.fixture
def fixed_uploader(storage):
    return AttachmentUploader(storage, clock=lambda: 1732622400.0)


def image(**kwargs) -> PendingAttachment:
    fields = {
        "attachment_type": MessageAttachmentType.IMAGE,
        "file_name": "my photo.jpg",
        "mime_type": "image/jpeg",
        "data": b"\xff\xd8\xff\xe0",
    }
    fields.update(kwargs)
    return PendingAttachment(**fields)


async def test_upload_stores_under_owner_prefix(fixed_uploader, storage):
    result = await fixed_uploader.upload(image(), USER_A)

    assert result.storage_path == "user-a/1732622400000-my-photo.jpg"
    assert result.attachment_url == "memory://chat-media/user-a/1732622400000-my-photo.jpg"
    assert result.attachment_type is MessageAttachmentType.IMAGE
    assert result.attachment_metadata.file_name == "my photo.jpg"
    assert result.attachment_metadata.file_size == 4
    assert result.attachment_metadata.mime_type == "image/jpeg"
    assert storage.objects[result.storage_path] == b"\xff\xd8\xff\xe0"
    assert storage.content_types[result.storage_path] == "image/jpeg"


async def test_mime_type_guessed_from_name(fixed_uploader):
    pending = PendingAttachment(
        attachment_type=MessageAttachmentType.DOCUMENT,
        file_name="report.pdf",
        data=b"%PDF-1.7",
    )

    result = await fixed_uploader.upload(pending, USER_A)

    assert result.attachment_metadata.mime_type == "application/pdf"


async def test_unknown_mime_falls_back_to_octet_stream(fixed_uploader):
    pending = PendingAttachment(
        attachment_type=MessageAttachmentType.DOCUMENT,
        file_name="blob",
        data=b"\x00\x01",
    )

    result = await fixed_uploader.upload(pending, USER_A)

    assert result.attachment_metadata.mime_type == "application/octet-stream"


async def test_reads_local_path_and_file_uri(uploader, tmp_path):
    clip = tmp_path / "clip.mp4"
    clip.write_bytes(b"video-bytes")

    from_path = await uploader.upload(
        PendingAttachment(attachment_type=MessageAttachmentType.VIDEO, file_name="clip.mp4", uri=str(clip)),
        USER_A,
    )
    from_uri = await uploader.upload(
        PendingAttachment(attachment_type=MessageAttachmentType.VIDEO, file_name="clip.mp4", uri=clip.as_uri()),
        USER_A,
    )

    assert from_path.attachment_metadata.file_size == len(b"video-bytes")
    assert from_uri.attachment_metadata.mime_type == "video/mp4"
    assert from_path.storage_path != from_uri.storage_path


async def test_unreadable_file_rejected(uploader, storage, tmp_path):
    pending = image(data=None, uri=str(tmp_path / "missing.jpg"))

    with pytest.raises(ValidationError):
        await uploader.upload(pending, USER_A)
    assert storage.objects == {}


async def test_malformed_path_rejected(uploader, storage):
    pending = image(data=None, uri="photos/bad\x00name.jpg")

    with pytest.raises(ValidationError):
        await uploader.upload(pending, USER_A)
    assert storage.objects == {}


async def test_attachment_without_source_rejected(uploader):
    with pytest.raises(ValidationError):
        await uploader.upload(image(data=None), USER_A)


async def test_storage_failure_is_transport_failure():
    uploader = AttachmentUploader(UnavailableStorage())

    with pytest.raises(TransportFailure):
        await uploader.upload(image(), USER_A)


async def test_owner_id_validated(uploader):
    with pytest.raises(ValidationError):
        await uploader.upload(image(), "../other-user")


async def test_discard_removes_object(uploader, storage):
    result = await uploader.upload(image(), USER_A)

    await uploader.discard(result)

    assert result.storage_path not in storage.objects


async def test_discard_swallows_storage_failure(storage):
    ok = await AttachmentUploader(storage).upload(image(), USER_A)

    await AttachmentUploader(UnavailableStorage()).discard(ok)


async def test_upload_rate_limit():
    uploader = AttachmentUploader(InMemoryObjectStorage(), rate_limiter=InMemoryRateLimiter(), upload_limit=1)

    await uploader.upload(image(file_name="one.jpg"), USER_A)
    with pytest.raises(RateLimitExceededError):
        await uploader.upload(image(file_name="two.jpg"), USER_A)
