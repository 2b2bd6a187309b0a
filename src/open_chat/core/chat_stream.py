"""Single-use async iterable returned by ``stream()`` and ``send_stream()``."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable

_logger = logging.getLogger(__name__)

# Background closes of abandoned streams; held so they are not collected
_closing: set[asyncio.Task[None]] = set()


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ChatStream:
    """Lazy, single-use async iterable of content deltas.

    Nothing happens until the first ``async for``; a second iteration
    yields nothing.  Use ``aclose()`` (or ``async with``) to release the
    underlying connection when stopping early.
    """

    def __init__(
        self,
        factory: Callable[[], AsyncIterator[str]],
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._factory = factory
        self._on_close = on_close
        self._iterator: AsyncIterator[str] | None = None
        self._started = False
        self._closed = False
        self._finished = False
        self._reading = False
        self._consumer: asyncio.Task[Any] | None = None

    @property
    def started(self) -> bool:
        return self._started

    def __aiter__(self) -> AsyncIterator[str]:
        if self._started or self._closed:
            return _empty()
        self._started = True
        self._iterator = self._factory()
        self._consumer = _current_task()
        return self

    async def __anext__(self) -> str:
        if self._closed or self._finished or self._iterator is None:
            raise StopAsyncIteration
        self._consumer = _current_task()
        self._reading = True
        try:
            return await self._iterator.__anext__()
        except BaseException:
            self._finished = True
            raise
        finally:
            self._reading = False

    def abandoned_by_current_task(self) -> bool:
        """True when the task that iterated this stream has stopped reading it.

        That is the state left behind by ``break`` out of ``async for``: the
        stream is started, not finished or closed, no read is in flight and
        the caller is the consuming task itself.
        """
        if not self._started or self._closed or self._finished or self._reading:
            return False
        current = _current_task()
        return current is not None and current is self._consumer

    def abandon(self) -> None:
        """Close without awaiting.

        ``on_close`` runs immediately; the iterator is closed by a background
        task on the running loop.
        """
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is None:
            return
        task = asyncio.get_running_loop().create_task(aclose())
        _closing.add(task)
        task.add_done_callback(_reap)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._iterator is not None:
            aclose = getattr(self._iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        if self._on_close is not None:
            self._on_close()

    async def collect(self) -> str:
        """Consume the whole stream and return the concatenated text."""
        return "".join([chunk async for chunk in self])

    async def __aenter__(self) -> ChatStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _reap(task: asyncio.Task[None]) -> None:
    _closing.discard(task)
    if not task.cancelled() and task.exception() is not None:
        _logger.warning(
            "Closing an abandoned stream failed: %s", task.exception(),
        )


async def _empty() -> AsyncIterator[str]:
    return
    yield
