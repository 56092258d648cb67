"""
Access Token Validation

Chat users sign in with Supabase; every request and socket carries the access
token Supabase issued. This module checks that token and maps its claims onto
a ``User``. Nothing here mints tokens.
"""
import logging
from typing import Any, Dict

from jose import JWTError, jwt

from chatsync.config import settings
from chatsync.models.user import User

logger = logging.getLogger(__name__)

TOKEN_ALGORITHMS = ["HS256"]
TOKEN_AUDIENCE = "authenticated"


class JWTValidationError(Exception):
    """The presented access token cannot identify a chat user"""


def decode_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify signature, expiry and audience of an access token.

    Raises:
        JWTValidationError: No secret configured, or the token is rejected
    """
    if not settings.is_auth_configured:
        logger.error("SUPABASE_JWT_SECRET is not set, rejecting every token")
        raise JWTValidationError("Authentication service is not configured")

    if not token:
        raise JWTValidationError("Token is required")

    try:
        claims = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=TOKEN_ALGORITHMS,
            audience=TOKEN_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        raise JWTValidationError("Token has expired")
    except jwt.JWTClaimsError as e:
        logger.warning(f"Rejected access token claims: {e}")
        raise JWTValidationError("Invalid token claims")
    except JWTError as e:
        logger.warning(f"Rejected access token: {e}")
        raise JWTValidationError("Invalid token")

    return claims


def extract_user_from_token(token: str) -> User:
    """Resolve the chat user a token belongs to; ``sub`` is the user id"""
    claims = decode_jwt_token(token)

    user_id = claims.get("sub")
    if not user_id:
        raise JWTValidationError("Token has no subject")

    logger.debug(f"🔑 Authenticated chat user {user_id}")
    return User(
        user_id=user_id,
        email=claims.get("email"),
        role=claims.get("role"),
        exp=claims.get("exp"),
        user_metadata=claims.get("user_metadata") or {},
    )
