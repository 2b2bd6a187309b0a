"""Async client for OpenAI-compatible chat-completion APIs.

Exposes ``chat()`` (single eventual result), ``stream()`` (lazy sequence of
content deltas) and ``create_conversation()`` (stateful session).  All
requests go through a ``RequestExecutor`` so classification, retry and
cancellation behave the same everywhere.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator, Sequence

import httpx

from open_chat.cancellation import raise_if_cancelled
from open_chat.config import ProfileSpec, load_config
from open_chat.core.chat_stream import ChatStream
from open_chat.core.conversation import ConversationSession
from open_chat.errors import ParseError, ValidationError, excerpt, validate_completion
from open_chat.types import (
    ChatOptions,
    ChatResponse,
    ConversationOptions,
    GenerationParams,
    Message,
    Role,
    TokenUsage,
)

from .retry import RequestExecutor, RetryPolicy
from .stream import decode_sse_stream
from .transport import HttpxTransport, RequestSpec, Transport

_logger = logging.getLogger(__name__)

_VALID_ROLES = {r.value for r in Role}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _coerce_message(message: Message | dict[str, Any]) -> Message:
    """Accept either ``Message`` or a ``{"role", "content"}`` dict."""
    if isinstance(message, Message):
        role, content = message.role, message.content
    else:
        role, content = message.get("role"), message.get("content")

    role_value = role.value if isinstance(role, Role) else role
    if role_value not in _VALID_ROLES:
        raise ValidationError(
            f"Invalid message role: {role_value}. "
            "Must be 'system', 'user', or 'assistant'.",
            "role",
        )
    if not isinstance(content, str):
        raise TypeError("Message content must be a string")
    return Message(Role(role_value), content)


def _validate_messages(
    messages: Sequence[Message | dict[str, Any]],
) -> list[Message]:
    if not messages:
        raise ValidationError("messages cannot be empty", "messages")
    return [_coerce_message(m) for m in messages]


def _validate_options(options: ChatOptions) -> None:
    t = options.temperature
    if t is not None and (
        isinstance(t, bool) or not isinstance(t, (int, float)) or not 0 <= t <= 2
    ):
        raise ValidationError("temperature must be between 0 and 2", "temperature")


def build_request_body(
    messages: list[Message],
    model: str,
    params: GenerationParams,
    stream: bool,
) -> dict[str, Any]:
    """Render the chat-completion payload (field renaming only)."""
    body: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in messages],
        "stream": stream,
    }
    if params.temperature is not None:
        body["temperature"] = params.temperature
    if params.max_tokens is not None:
        body["max_tokens"] = params.max_tokens
    if params.top_p is not None:
        body["top_p"] = params.top_p
    if params.stop is not None:
        body["stop"] = params.stop
    return body


def _request_model(options: ChatOptions, default: str) -> str:
    return options.model or default


def _usage_from(raw: Any) -> TokenUsage:
    if not isinstance(raw, dict):
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=raw.get("prompt_tokens", 0) or 0,
        completion_tokens=raw.get("completion_tokens", 0) or 0,
        total_tokens=raw.get("total_tokens", 0) or 0,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AsyncLLMClient:
    """Client for OpenAI-compatible LLM APIs (OpenRouter, LM Studio, etc.).

    Parameters
    ----------
    profile:
        Endpoint, credentials, default model and default sampling params.
    http_client:
        Optional ``httpx.AsyncClient`` to use instead of an owned one.
        The caller stays responsible for closing it.
    transport:
        Optional ``Transport`` overriding ``http_client`` entirely.
    """

    def __init__(
        self,
        profile: ProfileSpec,
        *,
        http_client: httpx.AsyncClient | None = None,
        transport: Transport | None = None,
    ) -> None:
        if not profile.api_key or not profile.api_key.strip():
            raise ValidationError(
                "api_key is required and cannot be empty", "api_key",
            )
        if not profile.model or not profile.model.strip():
            raise ValidationError("model is required and cannot be empty", "model")

        self.profile = profile
        self._model = profile.model
        self._owned_client: httpx.AsyncClient | None = None

        if transport is None:
            if http_client is None:
                http_client = httpx.AsyncClient(
                    timeout=httpx.Timeout(profile.timeout, connect=30, read=300),
                )
                self._owned_client = http_client
            transport = HttpxTransport(http_client)
        self._executor = RequestExecutor(transport)

    @classmethod
    def from_config(
        cls,
        path: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> AsyncLLMClient:
        """Build a client from the active profile of a YAML config."""
        config = load_config(path)
        _logger.info("Using profile %r", config.profile)
        return cls(config.active_profile, http_client=http_client)

    # ------------------------------------------------------------------
    # Model selection
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        """Change the default model for subsequent requests."""
        if not model or not model.strip():
            raise ValidationError("model cannot be empty", "model")
        self._model = model

    # ------------------------------------------------------------------
    # Non-streaming chat
    # ------------------------------------------------------------------

    async def chat(
        self,
        messages: Sequence[Message | dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> ChatResponse:
        """Send a chat completion request and wait for the full reply."""
        options = options or ChatOptions()
        validated = _validate_messages(messages)
        _validate_options(options)
        raise_if_cancelled(options.token)

        request = self._build_request(validated, options, stream=False)
        policy = RetryPolicy(
            max_retries=(
                self.profile.max_retries
                if options.max_retries is None
                else options.max_retries
            ),
            retry_enabled=options.retry,
            token=options.token,
        )

        start = time.monotonic()
        resp = await self._executor.execute(request, policy)
        latency = (time.monotonic() - start) * 1000

        try:
            data = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(
                "Failed to parse JSON response", cause=e, excerpt=excerpt(resp.content),
            ) from e
        finally:
            await resp.aclose()

        validate_completion(data)
        choice = data["choices"][0]
        content = choice["message"]["content"] or ""

        return ChatResponse(
            content=content,
            usage=_usage_from(data.get("usage")),
            model=data.get("model", _request_model(options, self._model)),
            id=data.get("id", ""),
            finish_reason=choice.get("finish_reason"),
            latency_ms=latency,
        )

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    def stream(
        self,
        messages: Sequence[Message | dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> ChatStream:
        """Stream a chat completion as content deltas.

        Validation and a pre-cancelled token fail here; the HTTP request is
        only issued once iteration starts.  Streaming never retries, since
        a partially emitted reply cannot be safely replayed.
        """
        options = options or ChatOptions()
        validated = _validate_messages(messages)
        _validate_options(options)
        raise_if_cancelled(options.token)

        request = self._build_request(validated, options, stream=True)
        policy = RetryPolicy.no_retry(options.token)

        async def _deltas() -> AsyncIterator[str]:
            resp = await self._executor.execute(request, policy)
            async for chunk in decode_sse_stream(resp, options.token):
                yield chunk

        return ChatStream(_deltas)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def create_conversation(
        self, options: ConversationOptions | None = None,
    ) -> ConversationSession:
        """Create a stateful conversation bound to this client."""
        return ConversationSession(self.chat, self.stream, options)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.profile.api_key}",
            "Content-Type": "application/json",
        }
        if self.profile.is_openrouter:
            headers["HTTP-Referer"] = self.profile.referer
            headers["X-Title"] = self.profile.title
        return headers

    def _url(self) -> str:
        return f"{self.profile.url.rstrip('/')}/chat/completions"

    def _build_request(
        self, messages: list[Message], options: ChatOptions, *, stream: bool,
    ) -> RequestSpec:
        params = self.profile.default_params.merged(options)
        body = build_request_body(
            messages, _request_model(options, self._model), params, stream,
        )
        return RequestSpec(
            method="POST",
            url=self._url(),
            headers=self._headers(),
            body=json.dumps(body).encode("utf-8"),
            stream=stream,
        )

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owned_client is not None:
            await self._owned_client.aclose()

    async def __aenter__(self) -> AsyncLLMClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
