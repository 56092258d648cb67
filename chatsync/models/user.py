"""
User Model for JWT Authentication

Represents the identity-provider user behind a request. The messaging core
only ever consumes ``user_id``.
"""
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field
from datetime import datetime, timezone


class User(BaseModel):
    """User model populated from Supabase JWT claims"""

    user_id: str = Field(..., description="Unique user identifier (sub claim from JWT)")
    email: Optional[str] = Field(None, description="User's email address")
    role: Optional[str] = Field(None, description="User role from JWT")
    exp: Optional[int] = Field(None, description="Token expiration timestamp")
    user_metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional user metadata")

    @property
    def is_token_expired(self) -> bool:
        """Check if the token is expired"""
        if not self.exp:
            return True
        return datetime.now(timezone.utc).timestamp() > self.exp
