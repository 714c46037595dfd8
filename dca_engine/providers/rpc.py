"""
Chain JSON-RPC provider: balances, allowances, nonces, fees and receipts.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .base import JsonRpcProvider
from ..config import settings
from ..core.execution.models import TxReceipt
from ..core.execution.tx_builder import build_allowance, build_balance_of


def _parse_quantity(value: Optional[str]) -> int:
    if not value or value == "0x":
        return 0
    return int(value, 16)


class ChainRpcProvider(JsonRpcProvider):
    name = "chain_rpc"
    timeout_s = 15

    def __init__(self, rpc_url: Optional[str] = None) -> None:
        super().__init__()
        self.rpc_url = rpc_url or settings.resolved_rpc_url

    async def ready(self) -> bool:
        return bool(self.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        try:
            chain_id = await self._rpc_call("eth_chainId", [])
            block = await self._rpc_call("eth_blockNumber", [])
            return {"status": "healthy", "chainId": int(chain_id, 16), "block": int(block, 16)}
        except Exception as exc:
            return {"status": "error", "reason": str(exc)}

    async def eth_call(self, to: str, data: str) -> str:
        return await self._rpc_call("eth_call", [{"to": to, "data": data}, "latest"])

    async def get_erc20_balance(self, token: str, owner: str) -> int:
        return _parse_quantity(await self.eth_call(token, build_balance_of(owner)))

    async def get_erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        return _parse_quantity(await self.eth_call(token, build_allowance(owner, spender)))

    async def get_native_balance(self, address: str) -> int:
        return _parse_quantity(await self._rpc_call("eth_getBalance", [address, "latest"]))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _parse_quantity(await self._rpc_call("eth_getTransactionCount", [address, block]))

    async def get_gas_price(self) -> int:
        return _parse_quantity(await self._rpc_call("eth_gasPrice", []))

    async def get_max_priority_fee(self) -> int:
        return _parse_quantity(await self._rpc_call("eth_maxPriorityFeePerGas", []))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return _parse_quantity(await self._rpc_call("eth_estimateGas", [tx]))

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        result = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return TxReceipt.from_rpc(result)


_chain_rpc_provider: Optional[ChainRpcProvider] = None


def get_chain_rpc_provider() -> ChainRpcProvider:
    global _chain_rpc_provider
    if _chain_rpc_provider is None:
        _chain_rpc_provider = ChainRpcProvider()
    return _chain_rpc_provider
