"""
Redemption calldata for the delegation manager.

``redeemDelegations(bytes[] permissionContexts, bytes32[] modes, bytes[] executionCallDatas)``
takes three parallel lists: one ABI-encoded delegation chain per redemption,
one execution mode per redemption and one packed execution per redemption.
"""

from typing import List, Sequence, Tuple

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address

from .models import Delegation, Execution

REDEEM_DELEGATIONS_SIGNATURE = "redeemDelegations(bytes[],bytes32[],bytes[])"

DELEGATION_TUPLE = "(address,address,bytes32,(address,bytes,bytes)[],uint256,bytes)"

# Call type single, exec type default (revert on failure)
SINGLE_DEFAULT_MODE = bytes(32)


def _hex_to_bytes(value: str) -> bytes:
    data = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(data)


def redeem_selector() -> bytes:
    return keccak(text=REDEEM_DELEGATIONS_SIGNATURE)[:4]


def _delegation_tuple(delegation: Delegation) -> Tuple:
    return (
        to_checksum_address(delegation.delegate),
        to_checksum_address(delegation.smart_account),
        _hex_to_bytes(delegation.authority),
        [
            (to_checksum_address(c.enforcer), _hex_to_bytes(c.terms), _hex_to_bytes(c.args))
            for c in delegation.enforcer_caveats
        ],
        delegation.salt,
        _hex_to_bytes(delegation.signature),
    )


def encode_permission_context(delegation: Delegation) -> bytes:
    """ABI-encode a single-link delegation chain."""
    return abi_encode([DELEGATION_TUPLE + "[]"], [[_delegation_tuple(delegation)]])


def encode_execution(execution: Execution) -> bytes:
    """Pack target (20 bytes) + value (32 bytes) + calldata."""
    return (
        _hex_to_bytes(to_checksum_address(execution.target))
        + execution.value.to_bytes(32, "big")
        + _hex_to_bytes(execution.call_data)
    )


def encode_redeem_delegations(redemptions: Sequence[Tuple[Delegation, Execution]]) -> str:
    """Build redeemDelegations calldata for one or more (delegation, execution) pairs."""
    if not redemptions:
        raise ValueError("At least one redemption is required")

    contexts: List[bytes] = []
    modes: List[bytes] = []
    executions: List[bytes] = []
    for delegation, execution in redemptions:
        contexts.append(encode_permission_context(delegation))
        modes.append(SINGLE_DEFAULT_MODE)
        executions.append(encode_execution(execution))

    body = abi_encode(["bytes[]", "bytes32[]", "bytes[]"], [contexts, modes, executions])
    return "0x" + (redeem_selector() + body).hex()
