"""
Tests for ERC-4337 UserOperation helpers and calldata builders.
"""

import pytest
from eth_abi import decode as abi_decode
from eth_utils import keccak

from dca_engine.core.delegation.models import Execution
from dca_engine.core.execution.tx_builder import (
    ERC20_TRANSFER_SELECTOR,
    build_allowance,
    build_deposit_rewards,
    build_erc20_approve,
    build_erc20_transfer,
    build_executor_call,
    selector_from_signature,
)
from dca_engine.core.execution.userop import UserOperation, UserOpGasEstimate, UserOpReceipt, compose_nonce

ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"
SENDER = "0x1111111111111111111111111111111111111111"
MANAGER = "0xdb9b1e94b5b69df7e401ddbede43491141047db3"


def _user_op(**changes) -> UserOperation:
    op = UserOperation(
        sender=SENDER,
        nonce=compose_nonce(7, 0),
        init_code="0x",
        call_data="0x1234",
        call_gas_limit=100_000,
        verification_gas_limit=50_000,
        pre_verification_gas=21_000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000,
    )
    return op.with_updates(**changes) if changes else op


def test_executor_call_wraps_redemption() -> None:
    selector = selector_from_signature("execute(address,uint256,bytes)")
    redemption = Execution(target=MANAGER, value=1, call_data="0x1234")

    call_data = build_executor_call(redemption, signature="execute(address,uint256,bytes)")

    assert call_data.startswith(selector)
    # 4-byte selector + 3 words (address, value, offset) + bytes length + data padded
    assert len(call_data) == len(selector) + 64 * 4 + 64
    assert call_data.endswith("1234" + "0" * 60)
    target, value, payload = abi_decode(["address", "uint256", "bytes"], bytes.fromhex(call_data[len(selector):]))
    assert target.lower() == MANAGER
    assert value == 1
    assert payload == bytes.fromhex("1234")


def test_compose_nonce_packs_key_above_sequence() -> None:
    nonce = compose_nonce(key=3, sequence=9)
    assert nonce >> 64 == 3
    assert nonce & (2**64 - 1) == 9


def test_compose_nonce_rejects_oversized_key() -> None:
    with pytest.raises(ValueError):
        compose_nonce(2**192)


def test_user_op_hash_is_deterministic() -> None:
    assert _user_op().hash(ENTRY_POINT, 8453) == _user_op().hash(ENTRY_POINT, 8453)


def test_user_op_hash_binds_chain_and_fields() -> None:
    base = _user_op().hash(ENTRY_POINT, 8453)
    assert _user_op().hash(ENTRY_POINT, 1) != base
    assert _user_op(call_data="0x1235").hash(ENTRY_POINT, 8453) != base
    assert _user_op(paymaster_and_data="0x" + "12" * 20).hash(ENTRY_POINT, 8453) != base


def test_signature_not_covered_by_hash() -> None:
    assert _user_op(signature="0x" + "ab" * 65).hash(ENTRY_POINT, 8453) == _user_op().hash(ENTRY_POINT, 8453)


def test_user_op_rpc_dict_uses_hex_quantities() -> None:
    payload = _user_op().to_rpc_dict()
    assert payload["nonce"] == hex(7 << 64)
    assert payload["callGasLimit"] == hex(100_000)
    assert payload["paymasterAndData"] == "0x"


def test_gas_estimate_accepts_hex_and_ints() -> None:
    estimate = UserOpGasEstimate.from_rpc(
        {"callGasLimit": "0x186a0", "verificationGasLimit": 50_000, "preVerificationGas": None}
    )
    assert estimate.call_gas_limit == 100_000
    assert estimate.verification_gas_limit == 50_000
    assert estimate.pre_verification_gas == 0


def test_erc20_transfer_encoding() -> None:
    data = build_erc20_transfer(SENDER, 1_000)
    assert data.startswith(ERC20_TRANSFER_SELECTOR)
    assert data[10:74] == SENDER[2:].rjust(64, "0")
    assert int(data[74:], 16) == 1_000


def test_erc20_approve_encoding() -> None:
    assert build_erc20_approve(SENDER, 5).startswith("0x095ea7b3")


def test_deposit_rewards_encoding() -> None:
    data = build_deposit_rewards(SENDER, 42)
    assert data.startswith("0x" + keccak(text="depositRewards(address,uint256)")[:4].hex())
    assert int(data[-64:], 16) == 42


def test_allowance_encoding() -> None:
    data = build_allowance(SENDER, MANAGER)
    assert data.startswith("0xdd62ed3e")
    assert data[-40:] == MANAGER[2:]


def test_user_op_receipt_uses_inner_call_outcome() -> None:
    receipt = UserOpReceipt.from_rpc(
        "0x" + "bb" * 32,
        {
            "success": False,
            "reason": "0xd81b2f2e",
            "actualGasUsed": "0x5208",
            "receipt": {"transactionHash": "0x" + "aa" * 32, "status": "0x1", "blockNumber": "0x10"},
        },
    )

    assert receipt.success is False
    assert receipt.transaction_hash == "0x" + "aa" * 32
    assert receipt.block_number == 16
    assert receipt.gas_used == 21_000
    assert receipt.reason == "0xd81b2f2e"
