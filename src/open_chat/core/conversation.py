"""Single-flight conversation session with an owned message history.

The session is either IDLE or BUSY.  ``send()`` and ``send_stream()`` move
it to BUSY and always bring it back to IDLE, whatever the outcome.  Any
public mutator called while BUSY is rejected with ``ConcurrencyError``;
nothing is ever queued.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from open_chat.errors import ConcurrencyError, ValidationError
from open_chat.types import (
    ChatOptions,
    ChatResponse,
    ConversationOptions,
    Message,
    Role,
)

from .chat_stream import ChatStream

_logger = logging.getLogger(__name__)

ChatFn = Callable[[list[Message], "ChatOptions | None"], Awaitable[ChatResponse]]
StreamFn = Callable[[list[Message], "ChatOptions | None"], AsyncIterable[str]]


class SessionState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


class ConversationSession:
    """Stateful multi-turn conversation.

    Parameters
    ----------
    chat_fn:
        ``async (messages, options) -> ChatResponse``, usually
        ``AsyncLLMClient.chat``.
    stream_fn:
        ``(messages, options) -> AsyncIterable[str]``, usually
        ``AsyncLLMClient.stream``.
    options:
        Optional system prompt and seed messages.
    """

    def __init__(
        self,
        chat_fn: ChatFn,
        stream_fn: StreamFn,
        options: ConversationOptions | None = None,
    ) -> None:
        options = options or ConversationOptions()
        self._chat_fn = chat_fn
        self._stream_fn = stream_fn
        self._system: str | None = options.system
        self._messages: list[Message] = list(options.initial_messages)
        self._state = SessionState.IDLE
        self._pending: ChatStream | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state is SessionState.BUSY

    @property
    def system(self) -> str | None:
        return self._system

    @property
    def history(self) -> list[Message]:
        """A fresh copy of the history, system prompt first if set."""
        return self._with_system()

    def _check_idle(self) -> None:
        pending = self._pending
        if pending is not None and pending.abandoned_by_current_task():
            # The consumer left its ``async for`` without closing the stream
            _logger.debug("Closing abandoned stream before the next operation")
            pending.abandon()
        if self._state is SessionState.BUSY:
            raise ConcurrencyError(
                "Cannot perform operation while a request is in progress"
            )

    def _acquire(self) -> None:
        self._check_idle()
        self._state = SessionState.BUSY

    def _release(self) -> None:
        self._state = SessionState.IDLE

    def _with_system(self) -> list[Message]:
        result: list[Message] = []
        if self._system:
            result.append(Message(Role.SYSTEM, self._system))
        result.extend(self._messages)
        return result

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, content: str, options: ChatOptions | None = None) -> str:
        """Send a user message and return the assistant's reply.

        The user message stays in history even if the request fails, so a
        retried ``send`` does not duplicate it.

        Being a coroutine, the busy check runs when the returned coroutine is
        first awaited, not when ``send()`` is called; it still happens before
        any suspension point, so two overlapping sends can never both start.
        """
        _require_str(content)
        self._acquire()
        try:
            self._messages.append(Message(Role.USER, content))
            response = await self._chat_fn(self._with_system(), options)
            self._messages.append(Message(Role.ASSISTANT, response.content))
            return response.content
        finally:
            self._release()

    def send_stream(
        self, content: str, options: ChatOptions | None = None,
    ) -> ChatStream:
        """Send a user message and stream the reply.

        The user message is recorded and the session turns BUSY before this
        returns.  The assistant message is committed only once the stream is
        exhausted successfully; errors, cancellation and early ``aclose()``
        commit nothing.

        Leaving the ``async for`` with ``break`` also abandons the reply:
        the next operation on this session from the same task closes the
        stream in the background and proceeds.  Other tasks keep getting
        ``ConcurrencyError`` until the stream is finished or closed.
        """
        _require_str(content)
        self._acquire()
        self._messages.append(Message(Role.USER, content))
        try:
            upstream = self._stream_fn(self._with_system(), options)
        except BaseException:
            self._release()
            raise

        released = False

        def _finish() -> None:
            nonlocal released
            if not released:
                released = True
                if self._pending is stream:
                    self._pending = None
                self._release()

        async def _deltas() -> AsyncIterator[str]:
            pending: list[str] = []
            completed = False
            try:
                async for chunk in upstream:
                    pending.append(chunk)
                    yield chunk
                completed = True
            finally:
                if completed:
                    self._messages.append(
                        Message(Role.ASSISTANT, "".join(pending)),
                    )
                else:
                    _logger.debug(
                        "Stream ended early, discarding %d pending chunks",
                        len(pending),
                    )
                    aclose = getattr(upstream, "aclose", None)
                    if aclose is not None:
                        await aclose()
                _finish()

        stream = ChatStream(_deltas, on_close=_finish)
        self._pending = stream
        return stream

    # ------------------------------------------------------------------
    # Manual history edits
    # ------------------------------------------------------------------

    def add_message(self, role: Role | str, content: str) -> None:
        """Append a user or assistant message without calling the API."""
        self._check_idle()
        value = role.value if isinstance(role, Role) else role
        if value == Role.SYSTEM.value:
            raise ValidationError(
                "Cannot add system messages manually, "
                "set the system prompt when creating the conversation",
                "role",
            )
        if value not in (Role.USER.value, Role.ASSISTANT.value):
            raise ValidationError(
                f"Invalid role: {value}. Must be 'user' or 'assistant'.", "role",
            )
        _require_str(content)
        self._messages.append(Message(Role(value), content))

    def clear(self) -> None:
        """Drop every message but keep the system prompt."""
        self._check_idle()
        self._messages.clear()

    def clear_all(self) -> None:
        """Drop every message and the system prompt."""
        self._check_idle()
        self._messages.clear()
        self._system = None


def _require_str(content: Any) -> None:
    if not isinstance(content, str):
        raise TypeError("Message content must be a string")
