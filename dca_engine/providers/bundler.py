"""
Bundler client for sponsored redemptions.

In sponsored mode the executor account redeems through a user operation:
the submitter estimates its gas here, sends it once the paymaster has
sponsored and the signer has signed it, then polls for its receipt.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .base import JsonRpcProvider
from ..config import settings
from ..core.execution.userop import UserOperation, UserOpGasEstimate, UserOpReceipt


class BundlerError(Exception):
    """Bundler missing or answered with an unexpected shape."""


class BundlerProvider(JsonRpcProvider):
    name = "bundler"
    timeout_s = 20

    def __init__(self, rpc_url: Optional[str] = None) -> None:
        super().__init__()
        self.rpc_url = rpc_url if rpc_url is not None else settings.erc4337_bundler_url

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not self.rpc_url:
            return {"status": "disabled", "reason": "Bundler not configured"}
        try:
            entry_points = await self._rpc_call("eth_supportedEntryPoints", [])
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}
        supported = [e.lower() for e in entry_points or []]
        if settings.erc4337_entrypoint_address.lower() not in supported:
            return {"status": "error", "reason": "Configured EntryPoint not supported", "entryPoints": entry_points}
        return {"status": "healthy", "entryPoints": entry_points}

    async def _call(self, method: str, params: list[Any]) -> Any:
        if not self.rpc_url:
            raise BundlerError("Bundler provider is not configured")
        return await self._rpc_call(method, params)

    async def estimate_user_operation_gas(self, user_op: UserOperation, entry_point: str) -> UserOpGasEstimate:
        result = await self._call("eth_estimateUserOperationGas", [user_op.to_rpc_dict(), entry_point])
        if not isinstance(result, dict):
            raise BundlerError(f"Unexpected gas estimate: {result!r}")
        return UserOpGasEstimate.from_rpc(result)

    async def send_user_operation(self, user_op: UserOperation, entry_point: str) -> str:
        """Returns the userOpHash the receipt is later looked up by."""
        user_op_hash = await self._call("eth_sendUserOperation", [user_op.to_rpc_dict(), entry_point])
        if not isinstance(user_op_hash, str):
            raise BundlerError(f"Unexpected userOpHash: {user_op_hash!r}")
        return user_op_hash

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[UserOpReceipt]:
        result = await self._call("eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        return UserOpReceipt.from_rpc(user_op_hash, result)


_bundler_provider: Optional[BundlerProvider] = None


def get_bundler_provider() -> BundlerProvider:
    global _bundler_provider
    if _bundler_provider is None:
        _bundler_provider = BundlerProvider()
    return _bundler_provider
