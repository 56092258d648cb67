"""
Messaging Errors

Typed failures raised by the message store, the attachment uploader and the
chat session controller. The HTTP layer maps each class to a status code.
"""
from typing import Optional


class ChatSyncError(Exception):
    """Base class for all messaging failures"""
    status_code: int = 500
    public_message: str = "Messaging operation failed"


class ValidationError(ChatSyncError):
    """Malformed content or attachment descriptor. Never retried."""
    status_code = 400
    public_message = "Invalid message"


class PermissionDeniedError(ChatSyncError):
    """Operation attempted by an actor that does not own the field"""
    status_code = 403
    public_message = "Permission denied"

    def __init__(self, message: str = "Permission denied"):
        super().__init__(message)


class NotFoundError(ChatSyncError):
    """Referenced message no longer exists"""
    status_code = 404
    public_message = "Message not found"


class TransportFailure(ChatSyncError):
    """Network, storage or store unavailability. Retryable by the caller."""
    status_code = 503
    public_message = "Service temporarily unavailable. Please try again."


class RateLimitExceededError(ChatSyncError):
    """Too many operations of one kind by one user within the window"""
    status_code = 429
    public_message = "Too many requests. Please try again later."

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after
