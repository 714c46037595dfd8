"""
ERC-4337 Paymaster Provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .base import JsonRpcProvider
from ..config import settings
from ..core.execution.userop import UserOperation, UserOpGasEstimate


class PaymasterError(Exception):
    """Paymaster provider error."""
    pass


@dataclass
class PaymasterConfig:
    rpc_url: str
    rpc_method: str = "pm_sponsorUserOperation"


@dataclass
class Sponsorship:
    """Paymaster answer: paymasterAndData plus any gas limits it re-estimated."""

    paymaster_and_data: str
    gas: Optional[UserOpGasEstimate] = None


class PaymasterProvider(JsonRpcProvider):
    name = "paymaster"
    timeout_s = 20

    def __init__(self, config: Optional[PaymasterConfig] = None) -> None:
        super().__init__()
        self._config = config or PaymasterConfig(
            rpc_url=settings.erc4337_paymaster_url,
            rpc_method=settings.erc4337_paymaster_rpc_method,
        )
        self.rpc_url = self._config.rpc_url

    async def ready(self) -> bool:
        return bool(self._config.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        if not await self.ready():
            return {"status": "disabled", "reason": "Paymaster not configured"}

        try:
            result = await self._rpc_call("eth_chainId", [])
            return {"status": "healthy", "chainId": result}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        entry_point: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Sponsorship:
        if not await self.ready():
            raise PaymasterError("Paymaster provider is not configured")

        params: list[Any] = [user_op.to_rpc_dict(), entry_point]
        if context:
            params.append(context)
        result = await self._rpc_call(self._config.rpc_method, params)

        if isinstance(result, dict):
            paymaster_and_data = result.get("paymasterAndData") or result.get("paymaster_and_data")
            if paymaster_and_data:
                gas = UserOpGasEstimate.from_rpc(result) if result.get("callGasLimit") else None
                return Sponsorship(paymaster_and_data=paymaster_and_data, gas=gas)
        if isinstance(result, str):
            return Sponsorship(paymaster_and_data=result)
        raise PaymasterError("Invalid paymaster response")


_paymaster_provider: Optional[PaymasterProvider] = None


def get_paymaster_provider() -> PaymasterProvider:
    global _paymaster_provider
    if _paymaster_provider is None:
        _paymaster_provider = PaymasterProvider()
    return _paymaster_provider
