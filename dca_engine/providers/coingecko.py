import httpx
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from ..cache import TTLCache
from ..config import settings
from .base import Provider, raise_for_status


_slog = structlog.stdlib.get_logger("dca_engine.coingecko")


class PriceUnavailableError(Exception):
    """No fresh or previously cached price is available."""
    pass


class CoingeckoProvider(Provider):
    """Coingecko API provider for USD prices and 24h change"""

    name = "coingecko"
    timeout_s = 15

    def __init__(self, cache: Optional[TTLCache] = None):
        self.api_key = settings.coingecko_api_key
        self.base_url = "https://api.coingecko.com/api/v3"
        self._cache = cache or TTLCache(default_ttl=settings.price_cache_ttl_seconds)

    def _build_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-CG-Demo-API-Key"] = self.api_key
        return headers

    async def ready(self) -> bool:
        return True  # API key is optional for basic tier

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{self.base_url}/ping",
                    headers=self._build_headers(),
                    timeout=self.timeout_s
                )
                response.raise_for_status()
                return {"status": "healthy", "latency_ms": int(response.elapsed.total_seconds() * 1000)}
        except Exception as e:
            return {"status": "error", "reason": str(e)}

    async def _simple_price(self, coin_id: str, include_change: bool) -> Dict[str, Any]:
        params = {
            "ids": coin_id,
            "vs_currencies": "usd",
            "include_24hr_change": "true" if include_change else "false",
        }
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}/simple/price",
                headers=self._build_headers(),
                params=params,
                timeout=self.timeout_s
            )
            raise_for_status(response, self.name)
            data = response.json()

        if coin_id not in data or "usd" not in data[coin_id]:
            raise PriceUnavailableError(f"Coingecko returned no USD price for {coin_id}")
        return data[coin_id]

    async def get_price_usd(self, coin_id: str) -> Decimal:
        """USD price for a coin, cached for the configured TTL.

        When the refresh fails the last cached value is returned regardless of
        age; with no cached value the original error propagates.
        """
        cache_key = f"price:{coin_id}"
        cached = await self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            data = await self._simple_price(coin_id, include_change=False)
            price = Decimal(str(data["usd"]))
        except Exception as e:
            stale = await self._cache.get(cache_key, allow_stale=True)
            if stale is None:
                raise
            _slog.warning("price_refresh_failed_using_cached", coin_id=coin_id, error=str(e))
            return stale

        if price <= 0:
            raise PriceUnavailableError(f"Non-positive price for {coin_id}: {price}")
        await self._cache.set(cache_key, price)
        return price

    async def get_24h_change_percent(self, coin_id: str = "bitcoin") -> float:
        """Percentage price change over the last 24 hours."""
        data = await self._simple_price(coin_id, include_change=True)
        change = data.get("usd_24h_change")
        if change is None:
            raise PriceUnavailableError(f"Coingecko returned no 24h change for {coin_id}")
        try:
            return float(change)
        except (TypeError, ValueError) as e:
            raise PriceUnavailableError(f"Invalid 24h change for {coin_id}: {change}") from e


_coingecko_provider: Optional[CoingeckoProvider] = None


def get_coingecko_provider() -> CoingeckoProvider:
    global _coingecko_provider
    if _coingecko_provider is None:
        _coingecko_provider = CoingeckoProvider()
    return _coingecko_provider
