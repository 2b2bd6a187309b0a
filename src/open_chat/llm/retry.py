"""Resilient request executor.

Issues one logical HTTP request, classifies the outcome and retries
transient failures (429, 5xx, transport errors) with capped exponential
backoff.  Attempts are strictly sequential and every wait observes the
cancellation token.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass

import httpx

from open_chat.cancellation import (
    CancellationToken,
    cancellable_sleep,
    raise_if_cancelled,
    run_cancellable,
)
from open_chat.errors import (
    LLMError,
    RateLimitError,
    classify_status,
    classify_transport_error,
    error_message_from_body,
    is_retriable_status,
)

from .transport import RequestSpec, Transport

_logger = logging.getLogger(__name__)

# Retry configuration
DEFAULT_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4, 8 ...
_MAX_BACKOFF = 30  # seconds, also caps Retry-After
_JITTER = 0.2  # seconds, uniform in [0, _JITTER)


@dataclass
class RetryPolicy:
    """Per-call retry settings."""

    max_retries: int = DEFAULT_MAX_RETRIES
    retry_enabled: bool = True
    token: CancellationToken | None = None

    @property
    def total_attempts(self) -> int:
        if not self.retry_enabled:
            return 1
        return max(0, self.max_retries) + 1

    @classmethod
    def no_retry(cls, token: CancellationToken | None = None) -> RetryPolicy:
        """Policy for streaming calls: fail fast on the very first error."""
        return cls(max_retries=0, retry_enabled=False, token=token)


def compute_backoff(attempt: int, retry_after: float | None = None) -> float:
    """Delay in seconds before retrying after attempt index *attempt*."""
    if retry_after is not None:
        return min(retry_after, _MAX_BACKOFF)
    delay = _BACKOFF_BASE * (2 ** attempt) + random.random() * _JITTER
    return min(delay, _MAX_BACKOFF)


class RequestExecutor:
    """Run a ``RequestSpec`` through a ``Transport`` under a ``RetryPolicy``."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def execute(
        self,
        request: RequestSpec,
        policy: RetryPolicy | None = None,
    ) -> httpx.Response:
        """Return the first 2xx response, or raise the classified error.

        The returned response is untouched: non-streaming callers parse its
        body, streaming callers hand it to the stream decoder.
        """
        policy = policy or RetryPolicy()
        token = policy.token
        raise_if_cancelled(token)

        attempts = policy.total_attempts
        for attempt in range(attempts):
            can_retry = policy.retry_enabled and attempt < attempts - 1

            try:
                response = await run_cancellable(
                    self._transport.send(request), token,
                )
            except (httpx.HTTPError, OSError) as e:
                error = classify_transport_error(e)
                if not can_retry:
                    raise error from e
                _logger.warning(
                    "LLM API network error (attempt %d/%d): %s, retrying...",
                    attempt + 1, attempts, e,
                )
                await cancellable_sleep(compute_backoff(attempt), token)
                continue

            if response.is_success:
                return response

            error = await self._error_from_response(response)
            if can_retry and is_retriable_status(response.status_code):
                retry_after = (
                    error.retry_after if isinstance(error, RateLimitError) else None
                )
                delay = compute_backoff(attempt, retry_after)
                _logger.warning(
                    "LLM API returned %d (attempt %d/%d), retrying in %.2fs...",
                    response.status_code, attempt + 1, attempts, delay,
                )
                await cancellable_sleep(delay, token)
                continue
            raise error

        # range(attempts) is never empty and every path above returns,
        # raises or continues into another attempt
        raise AssertionError("unreachable")

    @staticmethod
    async def _error_from_response(response: httpx.Response) -> LLMError:
        """Read and close a failed response, then classify it."""
        try:
            body = await response.aread()
        except (httpx.HTTPError, httpx.StreamError):
            body = b""
        finally:
            await response.aclose()
        message = error_message_from_body(body, response.status_code)
        return classify_status(response.status_code, message, response.headers)
