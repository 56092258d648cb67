"""API routers"""
from chatsync.api import messages, websocket

__all__ = ["messages", "websocket"]
