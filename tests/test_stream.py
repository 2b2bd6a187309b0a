"""Tests for the incremental SSE decoder and the ChatStream handle."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from open_chat.cancellation import CancellationToken
from open_chat.core.chat_stream import ChatStream
from open_chat.errors import CancelledError, NetworkError, ParseError
from open_chat.llm.stream import decode_sse_stream


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _frame(content: str) -> str:
    return "data: " + json.dumps(
        {"choices": [{"delta": {"content": content}}]}, ensure_ascii=False,
    ) + "\n\n"


class TrackedBody(httpx.AsyncByteStream):
    """Async body that yields *chunks* and counts ``aclose()`` calls."""

    def __init__(self, chunks, error: Exception | None = None, hang: bool = False):
        self.chunks = chunks
        self.error = error
        self.hang = hang
        self.close_count = 0

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk.encode() if isinstance(chunk, str) else chunk
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.sleep(10)

    async def aclose(self) -> None:
        self.close_count += 1


def _response(body: TrackedBody) -> httpx.Response:
    return httpx.Response(
        200,
        stream=body,
        request=httpx.Request("POST", "http://test"),
    )


async def _collect(response: httpx.Response, token=None) -> list[str]:
    return [chunk async for chunk in decode_sse_stream(response, token)]


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class TestDecode:
    async def test_single_delta_then_done(self):
        body = TrackedBody(['data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'])
        assert await _collect(_response(body)) == ["Hi"]

    async def test_chunks_in_order(self):
        body = TrackedBody([_frame("Hello"), _frame(", "), _frame("world"), "data: [DONE]\n\n"])
        chunks = await _collect(_response(body))
        assert chunks == ["Hello", ", ", "world"]
        assert "".join(chunks) == "Hello, world"

    async def test_frames_split_across_reads(self):
        raw = _frame("split") + _frame("frames") + "data: [DONE]\n\n"
        pieces = [raw[i:i + 7] for i in range(0, len(raw), 7)]
        assert await _collect(_response(TrackedBody(pieces))) == ["split", "frames"]

    async def test_multibyte_utf8_split_across_reads(self):
        raw = _frame("héllo 🌍").encode()
        cut = raw.index("🌍".encode()) + 2
        body = TrackedBody([raw[:cut], raw[cut:], b"data: [DONE]\n\n"])
        assert await _collect(_response(body)) == ["héllo 🌍"]

    async def test_multiple_frames_in_one_read(self):
        body = TrackedBody([_frame("a") + _frame("b") + _frame("c")])
        assert await _collect(_response(body)) == ["a", "b", "c"]

    async def test_skips_empty_and_comment_lines(self):
        body = TrackedBody([": keep-alive\n\n", "\n\n", _frame("x"), ": OPENROUTER PROCESSING\n"])
        assert await _collect(_response(body)) == ["x"]

    async def test_skips_non_data_fields(self):
        body = TrackedBody(["event: message\n", "id: 1\n", _frame("y")])
        assert await _collect(_response(body)) == ["y"]

    async def test_empty_delta_not_yielded(self):
        body = TrackedBody([_frame(""), _frame("real"), "data: [DONE]\n\n"])
        assert await _collect(_response(body)) == ["real"]

    async def test_missing_content_skipped(self):
        role_only = 'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        no_choices = 'data: {"usage":{"total_tokens":3}}\n\n'
        body = TrackedBody([role_only, no_choices, _frame("z")])
        assert await _collect(_response(body)) == ["z"]

    async def test_done_stops_reading(self):
        body = TrackedBody(["data: [DONE]\n\n", _frame("after")])
        assert await _collect(_response(body)) == []

    async def test_empty_stream(self):
        assert await _collect(_response(TrackedBody([]))) == []

    async def test_crlf_line_endings(self):
        body = TrackedBody([_frame("crlf").replace("\n", "\r\n")])
        assert await _collect(_response(body)) == ["crlf"]

    async def test_trailing_partial_frame_discarded(self):
        body = TrackedBody([_frame("ok"), 'data: {"choices":[{"del'])
        assert await _collect(_response(body)) == ["ok"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestDecodeFailures:
    async def test_malformed_json_raises_parse_error(self):
        body = TrackedBody([_frame("good"), "data: {not json}\n\n", _frame("never")])
        received = []
        with pytest.raises(ParseError) as exc_info:
            async for chunk in decode_sse_stream(_response(body)):
                received.append(chunk)
        assert received == ["good"]
        assert "{not json}" in exc_info.value.excerpt
        assert body.close_count == 1

    async def test_read_from_closed_response_raises_network_error(self):
        response = _response(TrackedBody([_frame("x")]))
        await response.aclose()
        with pytest.raises(NetworkError) as exc_info:
            await _collect(response)
        assert isinstance(exc_info.value.cause, httpx.StreamClosed)

    async def test_connection_drop_raises_network_error(self):
        body = TrackedBody([_frame("partial")], error=httpx.ReadError("connection reset"))
        received = []
        with pytest.raises(NetworkError) as exc_info:
            async for chunk in decode_sse_stream(_response(body)):
                received.append(chunk)
        assert received == ["partial"]
        assert isinstance(exc_info.value.cause, httpx.ReadError)
        assert body.close_count == 1


# ---------------------------------------------------------------------------
# Cancellation and cleanup
# ---------------------------------------------------------------------------

class TestDecodeCancellation:
    async def test_cancel_between_reads_keeps_delivered_content(self):
        body = TrackedBody([_frame("Hi"), _frame("there")])
        token = CancellationToken()
        received = []
        with pytest.raises(CancelledError):
            async for chunk in decode_sse_stream(_response(body), token):
                received.append(chunk)
                token.cancel("enough")
        # "there" arrived in a later read and is never decoded
        assert received == ["Hi"]
        assert body.close_count == 1

    async def test_cancel_while_read_pending(self):
        body = TrackedBody([_frame("first")], hang=True)
        token = CancellationToken()
        received = []
        with pytest.raises(CancelledError):
            async for chunk in decode_sse_stream(_response(body), token):
                received.append(chunk)
                asyncio.get_running_loop().call_later(0.02, token.cancel)
        assert received == ["first"]
        assert body.close_count == 1

    async def test_pre_cancelled_reads_nothing(self):
        body = TrackedBody([_frame("x")])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            await _collect(_response(body), token)
        assert body.close_count == 1

    async def test_closed_once_on_success(self):
        body = TrackedBody([_frame("a"), "data: [DONE]\n\n"])
        await _collect(_response(body))
        assert body.close_count == 1

    async def test_closed_on_early_consumer_exit(self):
        body = TrackedBody([_frame("a"), _frame("b"), _frame("c")])
        gen = decode_sse_stream(_response(body))
        assert await gen.__anext__() == "a"
        await gen.aclose()
        assert body.close_count == 1


class TestChatStream:
    async def test_lazy_until_iterated(self):
        started = False

        async def deltas():
            nonlocal started
            started = True
            yield "x"

        stream = ChatStream(deltas)
        assert not started
        assert [c async for c in stream] == ["x"]
        assert started

    async def test_single_use(self):
        async def deltas():
            yield "once"

        stream = ChatStream(deltas)
        assert [c async for c in stream] == ["once"]
        assert [c async for c in stream] == []

    async def test_collect(self):
        async def deltas():
            yield "a"
            yield "b"

        assert await ChatStream(deltas).collect() == "ab"

    async def test_aclose_runs_cleanup(self):
        cleaned = []
        closed = []

        async def deltas():
            try:
                yield "a"
                yield "b"
            finally:
                cleaned.append(True)

        async with ChatStream(deltas, on_close=lambda: closed.append(True)) as stream:
            async for chunk in stream:
                assert chunk == "a"
                break
        assert cleaned == [True]
        assert closed == [True]

    async def test_closed_stream_yields_nothing(self):
        async def deltas():
            yield "never"

        stream = ChatStream(deltas)
        await stream.aclose()
        assert [c async for c in stream] == []
