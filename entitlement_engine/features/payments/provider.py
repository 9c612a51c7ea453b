"""
Ports the payment flows depend on.

- OpenExternalUrl: hand a checkout URL to whatever can show it (browser tab,
  desktop shell, test recorder).
- PriceLookup: USD price of one unit of a chain's native currency.

Implementations are injected into PaymentVerifier so no flow reaches for a
global.
"""
import asyncio
import logging
import webbrowser
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union


logger = logging.getLogger("entitlements")

OpenExternalUrl = Callable[[str], Union[Awaitable[None], None]]


class PriceLookup(Protocol):
    async def usd_per_native(self, chain_id: int) -> float:
        """
        Return how many USD one native unit (ETH, MATIC, ...) is worth.

        Raises:
            NetworkError: If a live source was consulted and failed
        """
        ...


# Reference prices used when no live feed is wired in.
STATIC_NATIVE_PRICES: Dict[int, float] = {
    1: 2500.0,
    8453: 2500.0,
    137: 0.5,
}
DEFAULT_NATIVE_PRICE = 2500.0


class StaticPriceLookup:
    def __init__(self, prices: Optional[Dict[int, float]] = None, default: float = DEFAULT_NATIVE_PRICE):
        self.prices = dict(prices or STATIC_NATIVE_PRICES)
        self.default = default

    async def usd_per_native(self, chain_id: int) -> float:
        return self.prices.get(chain_id, self.default)


async def webbrowser_opener(url: str) -> None:
    """Open url with the platform browser without blocking the event loop."""
    opened = await asyncio.to_thread(webbrowser.open_new_tab, url)
    if not opened:
        logger.warning("[billing] no browser available to open checkout url")


class RecordingOpener:
    """Collects URLs instead of opening them. Used by tests and headless hosts."""

    def __init__(self):
        self.urls: List[str] = []

    def __call__(self, url: str) -> None:
        self.urls.append(url)
