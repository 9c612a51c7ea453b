"""Shared fakes for the entitlement tests."""
from typing import Callable

import httpx


T0 = 1_767_225_600_000  # 2026-01-01T00:00:00Z in epoch ms
MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

RECIPIENT = "0x1234567890abcdef1234567890abcdef12345678"
TX_HASH = "0x" + "ab" * 32


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def explorer_factory(handler: Callable[[httpx.Request], httpx.Response]) -> Callable[[], httpx.AsyncClient]:
    """Client factory whose requests are answered by handler instead of the network."""
    transport = httpx.MockTransport(handler)
    return lambda: httpx.AsyncClient(transport=transport, timeout=5.0)


def mined_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": {"blockNumber": "0x10"}})


def pending_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": None})


def unreachable_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("explorer unreachable", request=request)
