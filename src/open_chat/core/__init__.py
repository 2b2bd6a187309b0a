"""Conversation session and stream handle."""

from open_chat.core.chat_stream import ChatStream
from open_chat.core.conversation import ConversationSession, SessionState

__all__ = [
    "ChatStream",
    "ConversationSession",
    "SessionState",
]
