"""Error taxonomy for open-chat.

Every failure the client surfaces is one of the ``LLMError`` subclasses
below.  Classification helpers map HTTP status codes, transport exceptions
and malformed bodies onto exactly one kind:

  ValidationError  - caller mistake, raised before any request is sent
  AuthError        - 401 / 403
  ModelError       - 404
  RateLimitError   - 429 (may carry a Retry-After hint)
  ServerError      - any other non-2xx status
  NetworkError     - transport-level failure, wraps the cause
  ParseError       - malformed response body or stream frame
  ConcurrencyError - session used while a request is in flight
  CancelledError   - caller-initiated cancellation
"""

from __future__ import annotations

import json
import math
from typing import Any, Mapping

# Diagnostic excerpts of bad bodies are truncated to this many characters
_EXCERPT_LIMIT = 200


class LLMError(Exception):
    """Base class for every error raised by open-chat."""


class ValidationError(LLMError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class AuthError(LLMError):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class ModelError(LLMError):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class RateLimitError(LLMError):
    """429 response.  ``retry_after`` is in seconds, ``None`` if unusable."""

    def __init__(
        self, message: str, status: int, retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class ServerError(LLMError):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class NetworkError(LLMError):
    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ParseError(LLMError):
    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        excerpt: str = "",
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.excerpt = excerpt


class ConcurrencyError(LLMError):
    pass


class CancelledError(LLMError):
    """The operation was cancelled through a ``CancellationToken``.

    Distinct from ``asyncio.CancelledError``: this one is an ordinary
    exception carrying the reason given to ``CancellationToken.cancel()``.
    """

    def __init__(self, reason: Any = None) -> None:
        message = "The operation was cancelled"
        if reason is not None:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def is_retriable_status(status: int) -> bool:
    return status == 429 or status >= 500


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header value into seconds.

    Only non-negative finite numbers are accepted; HTTP-date forms,
    garbage, negatives, NaN and infinity all yield ``None`` so the caller
    falls back to computed backoff.
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds


def classify_status(
    status: int,
    message: str,
    headers: Mapping[str, str] | None = None,
) -> LLMError:
    """Map a non-2xx status code to exactly one error kind."""
    if status == 429:
        retry_after = None
        if headers is not None:
            retry_after = parse_retry_after(headers.get("Retry-After"))
        return RateLimitError(message, status, retry_after)
    if status in (401, 403):
        return AuthError(message, status)
    if status == 404:
        return ModelError(message, status)
    return ServerError(message, status)


def classify_transport_error(exc: BaseException) -> NetworkError:
    return NetworkError(f"Network request failed: {exc}", exc)


def error_message_from_body(body: bytes, status: int) -> str:
    """Extract a human-readable message from an error response body."""
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return f"HTTP {status}"
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return text


def excerpt(data: Any) -> str:
    """Bounded-length repr of a bad body for diagnostics."""
    if isinstance(data, (bytes, bytearray)):
        text = bytes(data).decode("utf-8", errors="replace")
    elif isinstance(data, str):
        text = data
    else:
        try:
            text = json.dumps(data)
        except (TypeError, ValueError):
            text = repr(data)
    if len(text) > _EXCERPT_LIMIT:
        return text[:_EXCERPT_LIMIT] + "..."
    return text


def validate_completion(data: Any) -> dict[str, Any]:
    """Check the structure of a chat-completion body.

    ``content`` that is missing from the message or is not a string is an
    error, while a ``null`` or empty-string ``content`` is accepted as an
    empty reply.
    """
    if not isinstance(data, dict):
        raise ParseError("Response is not a valid object", excerpt=excerpt(data))

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise ParseError("Response missing choices array", excerpt=excerpt(data))

    choice = choices[0]
    if not isinstance(choice, dict):
        raise ParseError("Invalid choice object in response", excerpt=excerpt(data))

    message = choice.get("message")
    if not isinstance(message, dict):
        raise ParseError("Response missing message object", excerpt=excerpt(data))

    if "content" not in message:
        raise ParseError("Response missing content field", excerpt=excerpt(data))

    content = message["content"]
    if content is not None and not isinstance(content, str):
        raise ParseError("Response content is not a string", excerpt=excerpt(data))

    return data
