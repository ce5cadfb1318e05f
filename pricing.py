"""
TON/USD price quotes used to express the one dollar fee in TON.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx

import config

logger = logging.getLogger(__name__)


class PriceUnavailableError(Exception):
    """Raised when no TON/USD quote could be obtained."""


class PriceService:
    """Fetches the TON price from CoinGecko and caches it for a few minutes."""

    def __init__(
        self,
        url: str = config.PRICE_API_URL,
        cache_ttl: float = config.PRICE_CACHE_TTL.total_seconds(),
        fallback_price: float = config.FALLBACK_TON_PRICE_USD,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.cache_ttl = cache_ttl
        self.fallback_price = fallback_price
        self.clock = clock
        self._client = client or httpx.AsyncClient(timeout=config.HTTP_TIMEOUT)
        self._cached_price: Optional[float] = None
        self._cached_at = 0.0

    async def get_ton_price_usd(self) -> float:
        """Return the current TON price in USD.

        :raises PriceUnavailableError: if the quote cannot be fetched.
        """
        if self._cached_price is not None and self.clock() - self._cached_at < self.cache_ttl:
            return self._cached_price
        try:
            response = await self._client.get(
                self.url, params={"ids": "the-open-network", "vs_currencies": "usd"}
            )
            response.raise_for_status()
            price = float(response.json()["the-open-network"]["usd"])
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            raise PriceUnavailableError(str(exc)) from exc
        if price <= 0:
            raise PriceUnavailableError(f"Invalid TON price {price}")
        self._cached_price = price
        self._cached_at = self.clock()
        return price

    async def get_ton_amount_for_usd(self, usd: float) -> float:
        """Convert ``usd`` to TON, using the fallback price when no quote is available."""
        try:
            price = await self.get_ton_price_usd()
        except PriceUnavailableError as exc:
            logger.warning("Could not fetch TON price (%s), using fallback %.2f USD", exc, self.fallback_price)
            price = self.fallback_price
        return usd / price

    async def close(self) -> None:
        await self._client.aclose()


def format_price_message(ton_amount: float, usdt_amount: float) -> str:
    """Describe both payment options for the subscription message."""
    return (
        f"💰 価格: ${config.SUBSCRIPTION_PRICE_USD:.2f} USD\n"
        f"💎 TON: {ton_amount:.4f} TON\n"
        f"💵 USDT: {usdt_amount:g} USDT\n"
    )
