"""Injected HTTP transport capability.

The executor never touches a global client: it receives something that
implements ``Transport`` and hands it a transport-agnostic ``RequestSpec``.
``HttpxTransport`` is the production implementation; tests hand it an
``httpx.AsyncClient`` backed by ``httpx.MockTransport``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import httpx


@dataclass
class RequestSpec:
    """One logical HTTP request, independent of the HTTP library."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    stream: bool = False


class Transport(Protocol):
    async def send(self, request: RequestSpec) -> httpx.Response:
        """Perform one HTTP exchange.

        For a streaming request the body is left unread and the caller owns
        closing the response.
        """
        ...


class HttpxTransport:
    """``Transport`` backed by an ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(self, request: RequestSpec) -> httpx.Response:
        req = self._client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.body,
        )
        return await self._client.send(req, stream=request.stream)
