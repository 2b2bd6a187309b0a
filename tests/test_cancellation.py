"""Tests for CancellationToken and the cancellable await helpers."""

from __future__ import annotations

import asyncio
import logging
import time

import pytest

from open_chat.cancellation import (
    CancellationToken,
    cancellable_sleep,
    raise_if_cancelled,
    run_cancellable,
)
from open_chat.errors import CancelledError


class TestCancellationToken:
    def test_starts_untriggered(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason is None

    def test_cancel_is_write_once(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_callback_fires_once(self):
        token = CancellationToken()
        seen = []
        token.add_callback(seen.append)
        token.cancel("stop")
        token.cancel("again")
        assert seen == ["stop"]

    def test_callback_after_cancel_fires_immediately(self):
        token = CancellationToken()
        token.cancel("done")
        seen = []
        token.add_callback(seen.append)
        assert seen == ["done"]

    def test_removed_callback_not_called(self):
        token = CancellationToken()
        seen = []
        token.add_callback(seen.append)
        token.remove_callback(seen.append)
        token.cancel()
        assert seen == []

    def test_failing_callback_does_not_block_others(self):
        token = CancellationToken()
        seen = []

        def bad(_reason):
            raise RuntimeError("boom")

        token.add_callback(bad)
        token.add_callback(seen.append)
        token.cancel("x")
        assert seen == ["x"]

    def test_failing_late_callback_is_logged_not_raised(self, caplog):
        token = CancellationToken()
        token.cancel("x")

        def bad(_reason):
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR, logger="open_chat.cancellation"):
            token.add_callback(bad)
        assert "Cancellation callback bad raised" in caplog.text

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        raise_if_cancelled(None)
        token.cancel("why")
        with pytest.raises(CancelledError) as exc_info:
            raise_if_cancelled(token)
        assert exc_info.value.reason == "why"

    async def test_wait_returns_reason(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel, "later")
        assert await token.wait() == "later"


class TestRunCancellable:
    async def test_no_token_just_awaits(self):
        async def work():
            return 42

        assert await run_cancellable(work(), None) == 42

    async def test_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return "ok"

        assert await run_cancellable(work(), CancellationToken()) == "ok"

    async def test_propagates_exception(self):
        async def work():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await run_cancellable(work(), CancellationToken())

    async def test_pre_cancelled_never_starts(self):
        started = False

        async def work():
            nonlocal started
            started = True

        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            await run_cancellable(work(), token)
        assert not started

    async def test_abandons_work_on_cancel(self):
        finished = False

        async def work():
            nonlocal finished
            await asyncio.sleep(10)
            finished = True

        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "abort")
        start = time.monotonic()
        with pytest.raises(CancelledError) as exc_info:
            await run_cancellable(work(), token)
        assert time.monotonic() - start < 1
        assert exc_info.value.reason == "abort"
        assert not finished


class TestCancellableSleep:
    async def test_sleeps_full_duration(self):
        start = time.monotonic()
        await cancellable_sleep(0.02, CancellationToken())
        assert time.monotonic() - start >= 0.015

    async def test_wakes_early_on_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel)
        start = time.monotonic()
        with pytest.raises(CancelledError):
            await cancellable_sleep(30, token)
        assert time.monotonic() - start < 1

    async def test_pre_cancelled(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            await cancellable_sleep(30, token)
