from abc import ABC, abstractmethod
from typing import Any, Dict

import httpx

from ..core.recovery.errors import NetworkError, RateLimitError


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: int = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


def raise_for_status(response: httpx.Response, provider: str) -> None:
    """Raise engine errors for transient HTTP failures, httpx errors otherwise.

    429 becomes RateLimitError and 5xx becomes NetworkError so the retry
    controller treats them as transient. Other 4xx statuses propagate as
    ``httpx.HTTPStatusError`` and are not retried.
    """
    if response.status_code == 429:
        raise RateLimitError(f"{provider} rate limit exceeded (429)", provider=provider)
    if response.status_code >= 500:
        raise NetworkError(f"{provider} server error {response.status_code}", provider=provider)
    response.raise_for_status()


class JsonRpcError(Exception):
    """JSON-RPC error object returned by a node, bundler, paymaster or signer."""

    def __init__(self, provider: str, error: Any):
        if isinstance(error, dict):
            message = error.get("message") or str(error)
            data = error.get("data")
        else:
            message, data = str(error), None
        super().__init__(f"{provider}: {message}" + (f" ({data})" if isinstance(data, str) else ""))
        self.provider = provider
        self.code = error.get("code") if isinstance(error, dict) else None
        self.data = data if isinstance(data, str) else None


class JsonRpcProvider(Provider):
    """Shared JSON-RPC transport over a lazily created httpx client."""

    rpc_url: str = ""

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None
        self._request_id = 0

    async def _rpc_call(self, method: str, params: list[Any]) -> Any:
        if not self._client or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)

        self._request_id += 1
        response = await self._client.post(
            self.rpc_url,
            json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
        )
        raise_for_status(response, self.name)
        payload = response.json()
        if "error" in payload:
            raise JsonRpcError(self.name, payload["error"])
        return payload.get("result")

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
