"""
Fear & Greed index provider (alternative.me).
"""

from typing import Any, Dict, Optional

import httpx

from .base import Provider, raise_for_status
from ..config import settings
from ..core.signal.models import MarketSignal, SignalSource


class FearGreedError(Exception):
    """Malformed response from the Fear & Greed index."""
    pass


class FearGreedProvider(Provider):
    name = "fear_greed"
    timeout_s = 10

    def __init__(self, base_url: Optional[str] = None) -> None:
        self.base_url = base_url or settings.fear_greed_url

    async def ready(self) -> bool:
        return bool(self.base_url)

    async def health_check(self) -> Dict[str, Any]:
        try:
            signal = await self.get_latest()
            return {"status": "healthy", "value": signal.value, "timestamp": signal.timestamp}
        except Exception as e:
            return {"status": "error", "reason": str(e)}

    async def get_latest(self) -> MarketSignal:
        """Fetch the most recent index reading."""
        async with httpx.AsyncClient() as client:
            response = await client.get(self.base_url, params={"limit": 1}, timeout=self.timeout_s)
            raise_for_status(response, self.name)
            payload = response.json()

        try:
            entry = payload["data"][0]
            value = int(entry["value"])
            timestamp = int(entry["timestamp"])
            classification = str(entry["value_classification"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise FearGreedError(f"Unexpected Fear & Greed payload: {e}") from e

        if value < 0 or value > 100:
            raise FearGreedError(f"Fear & Greed value out of range: {value}")

        return MarketSignal(
            value=value,
            classification=classification,
            timestamp=timestamp,
            source=SignalSource.PRIMARY,
        )


_fear_greed_provider: Optional[FearGreedProvider] = None


def get_fear_greed_provider() -> FearGreedProvider:
    global _fear_greed_provider
    if _fear_greed_provider is None:
        _fear_greed_provider = FearGreedProvider()
    return _fear_greed_provider
