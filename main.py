"""
ChatSync API - Main Entry Point
Direct messaging between users with realtime sync, attachments and read receipts
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from contextlib import asynccontextmanager
import logging

from chatsync import __version__
from chatsync.config import settings
from chatsync.api import messages, websocket as ws_router
from chatsync.services.change_feed import get_change_feed
from chatsync.services.websocket_service import get_connection_manager

# Initialize logger
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan (startup/shutdown)"""
    logger.info(f"Starting ChatSync API ({settings.CHATSYNC_BACKEND} backend)...")

    fanout = None
    feed = None
    if settings.WEBSOCKET_ENABLED:
        feed = get_change_feed()
        connection_manager = get_connection_manager()
        fanout = await feed.subscribe("messages-fanout", connection_manager.broadcast_message_event)
        logger.info("⚡ WebSocket fan-out subscribed to message changes")

    logger.info("Application startup complete")
    yield

    # Shutdown
    if fanout is not None:
        await feed.unsubscribe(fanout)
    logger.info("Application shutdown")


# Create FastAPI application
app = FastAPI(
    title="ChatSync API",
    description="""
## 💬 Direct Messaging Sync Engine

One-to-one conversations between users with:
- text and attachment messages (image, video, document)
- edit and delete by the sender, read receipts by the recipient
- conversation list with previews and unread counts
- realtime change events over WebSocket
""",
    version=__version__,
    lifespan=lifespan,
    swagger_ui_parameters={
        "docExpansion": "list",
        "filter": True,
        "persistAuthorization": True,
    },
    redoc_url="/redoc",
    docs_url="/docs",
    openapi_url="/openapi.json"
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(messages.router)  # Message endpoints (/messages/*)
app.include_router(ws_router.router)  # WebSocket endpoints (/ws/*)


# Custom OpenAPI schema with enhanced documentation
def custom_openapi():
    """Generate custom OpenAPI schema with the Bearer security scheme"""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title="ChatSync API",
        version=__version__,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Supabase access token of the signed-in user"
        }
    }
    openapi_schema["security"] = [{"BearerAuth": []}]

    openapi_schema["tags"] = [
        {
            "name": "health",
            "description": "Health check and system status endpoints"
        },
        {
            "name": "messages",
            "description": "💬 **Direct messages** - Conversations, sending, attachments, edits, deletes and read receipts."
        },
        {
            "name": "websocket",
            "description": "⚡ **WebSocket** - Realtime message change events and conversation list updates. Requires JWT authentication."
        }
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi


# Root endpoint
@app.get(
    "/",
    tags=["health"],
    summary="API Health Check",
    description="Check if the API is running and healthy.",
    response_description="System health status and information"
)
def root():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "message": "ChatSync direct messaging API",
        "version": __version__,
        "backend": settings.CHATSYNC_BACKEND,
        "websocket_enabled": settings.WEBSOCKET_ENABLED,
        "docs": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_json": "/openapi.json"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        ws_ping_interval=20.0,
        ws_ping_timeout=60.0,
    )
