"""Incremental decoder for OpenAI-style SSE chat streams.

The body is UTF-8 text made of newline-delimited frames::

    : keep-alive comment
    data: {"choices": [{"delta": {"content": "Hi"}}]}
    data: [DONE]

Frames may be split across reads, so bytes are decoded incrementally and
the trailing partial line is carried over to the next read.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator

import httpx

from open_chat.cancellation import CancellationToken, run_cancellable
from open_chat.errors import CancelledError, NetworkError, ParseError, excerpt

_logger = logging.getLogger(__name__)

_DATA_PREFIX = "data: "
_DONE = "[DONE]"


def _delta_content(frame: Any) -> str:
    """Return ``choices[0].delta.content`` or ``""`` when absent."""
    if not isinstance(frame, dict):
        return ""
    choices = frame.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        return ""
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def _read(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def decode_sse_stream(
    response: httpx.Response,
    token: CancellationToken | None = None,
) -> AsyncIterator[str]:
    """Yield non-empty content deltas from a streaming response.

    Raises ``ParseError`` on a malformed frame, ``CancelledError`` when
    *token* fires, and ``NetworkError`` for any other read failure.  The
    response is closed on every exit path.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    chunks = response.aiter_bytes()
    try:
        while True:
            if token is not None and token.cancelled:
                raise CancelledError(token.reason)

            try:
                raw = await run_cancellable(_read(chunks), token)
            except (httpx.HTTPError, httpx.StreamError, OSError) as e:
                raise NetworkError(f"Stream reading failed: {e}", e) from e
            if raw is None:
                break

            buffer += decoder.decode(raw)
            *lines, buffer = buffer.split("\n")

            for line in lines:
                line = line.strip()
                if not line or line.startswith(":"):
                    continue
                if not line.startswith(_DATA_PREFIX):
                    continue

                payload = line[len(_DATA_PREFIX):]
                if payload == _DONE:
                    return

                try:
                    frame = json.loads(payload)
                except json.JSONDecodeError as e:
                    raise ParseError(
                        f"Failed to parse SSE chunk: {e}",
                        cause=e,
                        excerpt=excerpt(payload),
                    ) from e

                content = _delta_content(frame)
                if content:
                    yield content

        if buffer.strip():
            _logger.debug("Discarding incomplete SSE frame: %s", excerpt(buffer))
    finally:
        await response.aclose()

