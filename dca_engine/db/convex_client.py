"""
Convex client for the engine's ledger.

Calls Convex queries and mutations via the Convex HTTP API. Transport
failures and 5xx responses surface as retryable NetworkError so ledger writes
can run under the retry controller.
"""

from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..core.recovery import NetworkError, RateLimitError


class ConvexError(Exception):
    """Base exception for Convex errors."""
    pass


class ConvexAuthError(ConvexError):
    """Authentication error when calling Convex."""
    pass


class ConvexQueryError(ConvexError):
    """Error executing a Convex query."""
    pass


class ConvexMutationError(ConvexError):
    """Error executing a Convex mutation."""
    pass


class ConvexClient:
    """
    Async client for interacting with Convex from Python.

    Example usage:
        client = ConvexClient(
            deployment_url="https://your-deployment.convex.cloud",
            deploy_key="prod:your-deploy-key"
        )

        delegations = await client.query("dca:listActiveDelegations", {})
        await client.mutation("dca:appendExecution", {"record": {...}})
    """

    def __init__(
        self,
        deployment_url: Optional[str] = None,
        deploy_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.deployment_url = deployment_url or settings.convex_url
        self.deploy_key = deploy_key or settings.convex_deploy_key
        self.timeout = timeout

        if not self.deployment_url:
            raise ConvexError("CONVEX_URL is required")

        # Remove trailing slash if present
        self.deployment_url = self.deployment_url.rstrip("/")

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Get headers for Convex API requests."""
        headers = {"Content-Type": "application/json"}
        if self.deploy_key:
            headers["Authorization"] = f"Convex {self.deploy_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(self, endpoint: str, function_name: str, args: Optional[Dict[str, Any]]) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.deployment_url}/api/{endpoint}",
                json={
                    "path": function_name,
                    "args": args or {},
                },
            )
        except httpx.RequestError as e:
            raise NetworkError(f"Convex request failed: {e}", provider="convex") from e

        if response.status_code == 401:
            raise ConvexAuthError("Invalid or missing deploy key")
        if response.status_code == 429:
            raise RateLimitError(provider="convex")
        if response.status_code >= 500:
            raise NetworkError(f"Convex {endpoint} unavailable: HTTP {response.status_code}", provider="convex")
        return response

    async def query(
        self,
        function_name: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Execute a Convex query function.

        Args:
            function_name: The query function path (e.g., "dca:listActiveDelegations")
            args: Arguments to pass to the query function

        Returns:
            The query result

        Raises:
            ConvexQueryError: If the query fails
            NetworkError: If Convex could not be reached
        """
        response = await self._post("query", function_name, args)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ConvexQueryError(f"Query failed: {e.response.text}") from e

        data = response.json()
        if "error" in data or data.get("status") == "error":
            raise ConvexQueryError(data.get("errorMessage") or data.get("error"))
        return data.get("value")

    async def mutation(
        self,
        function_name: str,
        args: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Execute a Convex mutation function.

        Raises:
            ConvexMutationError: If the mutation fails
            NetworkError: If Convex could not be reached
        """
        response = await self._post("mutation", function_name, args)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ConvexMutationError(f"Mutation failed: {e.response.text}") from e

        data = response.json()
        if "error" in data or data.get("status") == "error":
            raise ConvexMutationError(data.get("errorMessage") or data.get("error"))
        return data.get("value")


# Singleton instance
_convex_client: Optional[ConvexClient] = None


def get_convex_client() -> ConvexClient:
    """Get the singleton Convex client instance."""
    global _convex_client
    if _convex_client is None:
        _convex_client = ConvexClient()
    return _convex_client
