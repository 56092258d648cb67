"""
Application Configuration
Centralized configuration management using environment variables
"""
import os
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings loaded from environment variables"""

    # Backend selection: "supabase" for production, "memory" for local runs
    CHATSYNC_BACKEND: str = os.getenv("CHATSYNC_BACKEND", "supabase").lower()

    # Supabase Configuration
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_KEY: str = os.getenv("SUPABASE_KEY", "")  # Anon key for client
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    SUPABASE_JWT_SECRET: str = os.getenv("SUPABASE_JWT_SECRET", "")

    # Tables and buckets
    MESSAGES_TABLE: str = os.getenv("MESSAGES_TABLE", "messages")
    CHAT_MEDIA_BUCKET: str = os.getenv("CHAT_MEDIA_BUCKET", "chat-media")
    STARTUP_PROFILES_TABLE: str = os.getenv("STARTUP_PROFILES_TABLE", "startup_profiles")
    INVESTOR_PROFILES_TABLE: str = os.getenv("INVESTOR_PROFILES_TABLE", "investor_profiles")

    # Messaging rules
    MESSAGE_MAX_LENGTH: int = int(os.getenv("MESSAGE_MAX_LENGTH", "1000"))
    CHAT_POLL_INTERVAL_SECONDS: float = float(os.getenv("CHAT_POLL_INTERVAL_SECONDS", "5"))

    # Rate limits (per user, per minute)
    RATE_LIMIT_BACKEND: str = os.getenv("RATE_LIMIT_BACKEND", "memory").lower()
    RATE_LIMIT_WINDOW_SECONDS: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    RATE_LIMIT_CREATE_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_CREATE_PER_MINUTE", "20"))
    RATE_LIMIT_UPDATE_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_UPDATE_PER_MINUTE", "30"))
    RATE_LIMIT_DELETE_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_DELETE_PER_MINUTE", "30"))
    RATE_LIMIT_UPLOAD_PER_MINUTE: int = int(os.getenv("RATE_LIMIT_UPLOAD_PER_MINUTE", "10"))

    # Redis (only used when RATE_LIMIT_BACKEND=redis)
    REDIS_URL: Optional[str] = os.getenv("REDIS_URL")

    # CORS Configuration
    CORS_ORIGINS = [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081,http://localhost:19006").split(",")
        if origin.strip()
    ]

    # WebSocket Configuration
    WEBSOCKET_ENABLED: bool = os.getenv("WEBSOCKET_ENABLED", "true").lower() == "true"

    @property
    def is_supabase_configured(self) -> bool:
        """Check if Supabase configuration is present"""
        return bool(self.SUPABASE_URL and (self.SUPABASE_SERVICE_KEY or self.SUPABASE_KEY))

    @property
    def is_auth_configured(self) -> bool:
        """Check if JWT verification is possible"""
        return bool(self.SUPABASE_JWT_SECRET)

    @property
    def use_memory_backend(self) -> bool:
        return self.CHATSYNC_BACKEND == "memory"


# Global settings instance
settings = Settings()
