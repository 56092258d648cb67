"""
Authentication Module

Resolves the authenticated user from Supabase access tokens.
"""
from chatsync.auth.jwt_handler import decode_jwt_token, extract_user_from_token, JWTValidationError
from chatsync.auth.dependencies import get_current_user

__all__ = [
    "decode_jwt_token",
    "extract_user_from_token",
    "JWTValidationError",
    "get_current_user",
]
