"""
Remote operator signer.

The engine never holds keys. A signer service exposing the standard
``eth_sendTransaction`` and ``personal_sign`` JSON-RPC methods for the
operator (and executor account owner) performs every signature.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .base import JsonRpcProvider
from ..config import settings


class SignerError(Exception):
    """Remote signer error."""
    pass


class RemoteSignerProvider(JsonRpcProvider):
    name = "signer"
    timeout_s = 30

    def __init__(self, rpc_url: Optional[str] = None, operator_address: Optional[str] = None) -> None:
        super().__init__()
        self.rpc_url = rpc_url or settings.signer_url
        self.operator_address = operator_address or settings.operator_address

    async def ready(self) -> bool:
        return bool(self.rpc_url) and bool(self.operator_address)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Signer not configured"}

        try:
            accounts = await self._rpc_call("eth_accounts", [])
            has_operator = self.operator_address.lower() in [a.lower() for a in accounts or []]
            return {"status": "healthy" if has_operator else "degraded", "operatorAvailable": has_operator}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def send_transaction(self, tx: Dict[str, Any]) -> str:
        """Sign and broadcast an operator transaction, returning its hash."""
        if not await self.ready():
            raise SignerError("Signer is not configured")

        result = await self._rpc_call("eth_sendTransaction", [{"from": self.operator_address, **tx}])
        if not isinstance(result, str):
            raise SignerError("Invalid signer response for eth_sendTransaction")
        return result

    async def sign_user_operation_hash(self, user_op_hash: str) -> str:
        """EIP-191 signature over a userOpHash by the executor account owner."""
        if not await self.ready():
            raise SignerError("Signer is not configured")

        result = await self._rpc_call("personal_sign", [user_op_hash, self.operator_address])
        if not isinstance(result, str):
            raise SignerError("Invalid signer response for personal_sign")
        return result


_signer_provider: Optional[RemoteSignerProvider] = None


def get_signer_provider() -> RemoteSignerProvider:
    global _signer_provider
    if _signer_provider is None:
        _signer_provider = RemoteSignerProvider()
    return _signer_provider
