"""
Request Authentication

``get_current_user`` is the dependency every chat endpoint uses to learn who
is acting. Message ownership checks downstream trust this id.
"""
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatsync.auth.jwt_handler import JWTValidationError, extract_user_from_token
from chatsync.models.user import User

logger = logging.getLogger(__name__)

# Name is referenced by the BearerAuth scheme in main.custom_openapi
bearer_scheme = HTTPBearer(
    scheme_name="BearerAuth",
    description="Supabase access token of the chat user",
    auto_error=False
)


def _unauthorized(status_code: int, detail: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> User:
    """
    The user acting on this request.

    401 when the bearer token is absent or fails validation, 403 when the
    token has expired since it was decoded.
    """
    if credentials is None:
        logger.info("Chat request without bearer token")
        raise _unauthorized(status.HTTP_401_UNAUTHORIZED, "Authorization header required")

    try:
        user = extract_user_from_token(credentials.credentials)
    except JWTValidationError as e:
        raise _unauthorized(status.HTTP_401_UNAUTHORIZED, str(e))

    if user.is_token_expired:
        logger.warning(f"Expired token used by chat user {user.user_id}")
        raise _unauthorized(status.HTTP_403_FORBIDDEN, "Token has expired")

    return user
