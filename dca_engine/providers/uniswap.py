"""
Uniswap Trading API provider (routing collaborator).

Two calls per swap: POST /quote for a route and expected output, then
POST /swap to turn the quote into an executable call {to, data, value}.
Routing itself is entirely the collaborator's concern.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .base import Provider, raise_for_status
from ..config import settings


class UniswapApiError(Exception):
    """Trading API returned an unusable response."""
    pass


@dataclass
class RouteQuote:
    """Raw quote payload plus the fields the engine relies on."""
    payload: Dict[str, Any]
    amount_out: int


@dataclass
class SwapCall:
    to: str
    data: str
    value: int


class UniswapTradingProvider(Provider):
    name = "uniswap"
    timeout_s = 20

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None) -> None:
        self.base_url = (base_url or settings.trading_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.uniswap_api_key
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self.api_key}

    async def ready(self) -> bool:
        return bool(self.api_key)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Trading API key not configured"}
        return {"status": "configured", "baseUrl": self.base_url}

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)

        response = await self._client.post(f"{self.base_url}{path}", headers=self._headers(), json=body)
        if 400 <= response.status_code < 500 and response.status_code != 429:
            try:
                error = response.json()
            except ValueError:
                error = {}
            message = error.get("errorCode") or error.get("error") or error.get("detail") or f"HTTP {response.status_code}"
            raise UniswapApiError(f"Trading API {path} failed: {message}")
        raise_for_status(response, self.name)
        return response.json()

    async def get_quote(
        self,
        swapper: str,
        token_in: str,
        token_out: str,
        amount: int,
        slippage_bps: int,
    ) -> RouteQuote:
        data = await self._post(
            "/quote",
            {
                "swapper": swapper,
                "tokenIn": token_in,
                "tokenOut": token_out,
                "tokenInChainId": settings.chain_id,
                "tokenOutChainId": settings.chain_id,
                "amount": str(amount),
                "type": "EXACT_INPUT",
                "slippageTolerance": slippage_bps / 100,
            },
        )
        try:
            amount_out = int(data["quote"]["output"]["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise UniswapApiError("Invalid quote response: missing output amount") from e
        return RouteQuote(payload=data, amount_out=amount_out)

    async def get_swap_call(self, quote: RouteQuote) -> SwapCall:
        # Permit payloads are for user-signed flows; delegated swaps rely on standing approvals
        body = {k: v for k, v in quote.payload.items() if k not in ("permitData", "permitTransaction")}
        data = await self._post("/swap", body)
        swap = data.get("swap") or {}
        if not swap.get("to") or not swap.get("data"):
            raise UniswapApiError("Invalid swap response: missing to/data")
        value = swap.get("value") or "0x0"
        return SwapCall(
            to=swap["to"],
            data=swap["data"],
            value=int(value, 16) if isinstance(value, str) and value.startswith("0x") else int(value),
        )


_uniswap_provider: Optional[UniswapTradingProvider] = None


def get_uniswap_provider() -> UniswapTradingProvider:
    global _uniswap_provider
    if _uniswap_provider is None:
        _uniswap_provider = UniswapTradingProvider()
    return _uniswap_provider
