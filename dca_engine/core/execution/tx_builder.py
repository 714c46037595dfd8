"""
Calldata for the calls the engine makes besides the redemption itself: the
executor account's ``execute`` wrapper around a redemption, the token calls
and the reward-pool deposit.
"""

from typing import Any, List, Optional, Sequence

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from ...config import settings
from ..delegation.models import Execution

ERC20_APPROVE_SELECTOR = "0x095ea7b3"  # approve(address,uint256)
ERC20_TRANSFER_SELECTOR = "0xa9059cbb"  # transfer(address,uint256)
ERC20_BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)
ERC20_ALLOWANCE_SELECTOR = "0xdd62ed3e"  # allowance(address,address)
DEPOSIT_REWARDS_SIGNATURE = "depositRewards(address,uint256)"


def selector_from_signature(signature: str) -> str:
    return "0x" + keccak(text=signature)[:4].hex()


def _encode_call(selector: str, types: Sequence[str], values: List[Any]) -> str:
    return selector + abi_encode(list(types), values).hex()


def build_executor_call(redemption: Execution, signature: Optional[str] = None) -> str:
    """
    Calldata for the executor account to perform ``redemption``.

    In sponsored mode the executor account is the delegate, so the user
    operation calls ``execute(target, value, data)`` on it with the delegation
    manager call as the payload.
    """
    call_data = redemption.call_data[2:] if redemption.call_data.startswith("0x") else redemption.call_data
    return _encode_call(
        selector_from_signature(signature or settings.erc4337_account_execute_signature),
        ["address", "uint256", "bytes"],
        [to_checksum_address(redemption.target), redemption.value, bytes.fromhex(call_data)],
    )


def build_erc20_transfer(recipient: str, amount: int) -> str:
    return _encode_call(ERC20_TRANSFER_SELECTOR, ["address", "uint256"], [to_checksum_address(recipient), amount])


def build_erc20_approve(spender: str, amount: int) -> str:
    return _encode_call(ERC20_APPROVE_SELECTOR, ["address", "uint256"], [to_checksum_address(spender), amount])


def build_balance_of(owner: str) -> str:
    return _encode_call(ERC20_BALANCE_OF_SELECTOR, ["address"], [to_checksum_address(owner)])


def build_allowance(owner: str, spender: str) -> str:
    return _encode_call(
        ERC20_ALLOWANCE_SELECTOR, ["address", "address"], [to_checksum_address(owner), to_checksum_address(spender)]
    )


def build_deposit_rewards(token: str, amount: int) -> str:
    """Reward pool depositRewards(token, amount)."""
    return _encode_call(
        selector_from_signature(DEPOSIT_REWARDS_SIGNATURE), ["address", "uint256"], [to_checksum_address(token), amount]
    )
