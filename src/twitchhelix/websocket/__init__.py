"""EventSub WebSocket components."""

from .messages import MessageType, SocketMessage, parse_message
from .session import EventSocketSession, SessionCallbacks, SessionState, status_for_close_code

__all__ = [
    "EventSocketSession",
    "SessionCallbacks",
    "SessionState",
    "MessageType",
    "SocketMessage",
    "parse_message",
    "status_for_close_code",
]
