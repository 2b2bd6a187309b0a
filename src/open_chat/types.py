"""Shared data types for open-chat."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from open_chat.cancellation import CancellationToken


# ---------------------------------------------------------------------------
# Message types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Closed set of message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single role-tagged chat message."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(role=Role(raw["role"]), content=raw["content"])


# ---------------------------------------------------------------------------
# Request types
# ---------------------------------------------------------------------------

@dataclass
class GenerationParams:
    """Sampling parameters forwarded to the provider."""

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    stop: list[str] | None = None

    def merged(self, override: GenerationParams | None) -> GenerationParams:
        """Return a copy with every non-``None`` field of *override* applied."""
        if override is None:
            return GenerationParams(
                self.temperature, self.max_tokens, self.top_p, self.stop,
            )
        return GenerationParams(
            temperature=_pick(override.temperature, self.temperature),
            max_tokens=_pick(override.max_tokens, self.max_tokens),
            top_p=_pick(override.top_p, self.top_p),
            stop=_pick(override.stop, self.stop),
        )


def _pick(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


@dataclass
class ChatOptions(GenerationParams):
    """Per-call options for ``chat()`` / ``stream()``.

    ``retry`` and ``max_retries`` only apply to non-streaming calls;
    streaming never retries.
    """

    model: str | None = None
    token: CancellationToken | None = None
    retry: bool = True
    max_retries: int | None = None  # None: use the profile setting


@dataclass
class ConversationOptions:
    """Options for creating a ``ConversationSession``."""

    system: str | None = None
    initial_messages: list[Message] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatResponse:
    """Unified non-streaming response."""

    content: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    id: str = ""
    finish_reason: str | None = None
    latency_ms: float = 0
