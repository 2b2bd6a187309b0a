"""open-chat: resilient async client for OpenAI-compatible chat APIs."""

from open_chat.cancellation import CancellationToken
from open_chat.config import ChatConfig, ProfileSpec, load_config
from open_chat.core import ChatStream, ConversationSession, SessionState
from open_chat.errors import (
    AuthError,
    CancelledError,
    ConcurrencyError,
    LLMError,
    ModelError,
    NetworkError,
    ParseError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from open_chat.llm import AsyncLLMClient
from open_chat.types import (
    ChatOptions,
    ChatResponse,
    ConversationOptions,
    GenerationParams,
    Message,
    Role,
    TokenUsage,
)

__all__ = [
    "AsyncLLMClient",
    "AuthError",
    "CancellationToken",
    "CancelledError",
    "ChatConfig",
    "ChatOptions",
    "ChatResponse",
    "ChatStream",
    "ConcurrencyError",
    "ConversationOptions",
    "ConversationSession",
    "GenerationParams",
    "LLMError",
    "Message",
    "ModelError",
    "NetworkError",
    "ParseError",
    "ProfileSpec",
    "RateLimitError",
    "Role",
    "ServerError",
    "SessionState",
    "TokenUsage",
    "ValidationError",
    "load_config",
]
