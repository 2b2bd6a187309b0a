"""Write-once cancellation token observed at every suspension point."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from open_chat.errors import CancelledError

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Callback = Callable[[Any], Any]


class CancellationToken:
    """A signal that can be triggered exactly once.

    Consumers only ever ask two things: *is it triggered?* (``cancelled``)
    and *tell me when it is* (``wait()`` / ``add_callback()``).  Calling
    ``cancel()`` a second time is a no-op; the first reason wins.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Any = None
        self._callbacks: list[Callback] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Any:
        return self._reason

    def cancel(self, reason: Any = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            self._notify(cb)

    def add_callback(self, callback: Callback) -> None:
        """Call *callback(reason)* once when cancelled (now, if already)."""
        if self._event.is_set():
            self._notify(callback)
            return
        self._callbacks.append(callback)

    def _notify(self, callback: Callback) -> None:
        try:
            callback(self._reason)
        except Exception:
            _logger.exception(
                "Cancellation callback %s raised",
                getattr(callback, "__name__", callback),
            )

    def remove_callback(self, callback: Callback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> Any:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self._reason)


def raise_if_cancelled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
) -> T:
    """Await *awaitable*, abandoning it as soon as *token* fires.

    Raises ``CancelledError`` after the abandoned work has been cancelled.
    """
    if token is None:
        return await awaitable
    if token.cancelled:
        # Never started, so close a bare coroutine to avoid a warning
        close = getattr(awaitable, "close", None)
        if close is not None:
            close()
        raise CancelledError(token.reason)

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, waiter}, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
            try:
                await work
            except (asyncio.CancelledError, Exception):
                _logger.debug("Abandoned operation finished during cancel")

    if work in done:
        return work.result()
    raise CancelledError(token.reason)


async def cancellable_sleep(
    seconds: float,
    token: CancellationToken | None,
) -> None:
    """Sleep for *seconds*, raising ``CancelledError`` the moment *token* fires."""
    if token is None:
        await asyncio.sleep(seconds)
        return
    token.raise_if_cancelled()
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return
    raise CancelledError(token.reason)
