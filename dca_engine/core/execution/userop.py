"""
ERC-4337 UserOperation models and helpers.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from eth_abi import encode as abi_encode
from eth_utils import keccak, to_checksum_address


def _to_hex(value: int) -> str:
    return hex(value)


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def compose_nonce(key: int, sequence: int = 0) -> int:
    """EntryPoint nonce: 192-bit key in the high bits, 64-bit sequence below."""
    if key < 0 or key >= 2**192:
        raise ValueError("Nonce key must fit in 192 bits")
    return (key << 64) | sequence


@dataclass
class UserOperation:
    """
    ERC-4337 (EntryPoint v0.6) UserOperation payload.

    Values should be supplied in raw units (wei / gas units) and are encoded
    as hex for RPC calls.
    """
    sender: str
    nonce: int
    init_code: str
    call_data: str
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: str = "0x"
    signature: str = "0x"

    def to_rpc_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _to_hex(self.nonce),
            "initCode": self.init_code,
            "callData": self.call_data,
            "callGasLimit": _to_hex(self.call_gas_limit),
            "verificationGasLimit": _to_hex(self.verification_gas_limit),
            "preVerificationGas": _to_hex(self.pre_verification_gas),
            "maxFeePerGas": _to_hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex(self.max_priority_fee_per_gas),
            "paymasterAndData": self.paymaster_and_data,
            "signature": self.signature,
        }

    def with_updates(self, **changes: Any) -> "UserOperation":
        return replace(self, **changes)

    def pack(self) -> bytes:
        """ABI-encode the fields covered by the signature (dynamic fields hashed)."""
        return abi_encode(
            [
                "address", "uint256", "bytes32", "bytes32", "uint256",
                "uint256", "uint256", "uint256", "uint256", "bytes32",
            ],
            [
                to_checksum_address(self.sender),
                self.nonce,
                keccak(_hex_to_bytes(self.init_code)),
                keccak(_hex_to_bytes(self.call_data)),
                self.call_gas_limit,
                self.verification_gas_limit,
                self.pre_verification_gas,
                self.max_fee_per_gas,
                self.max_priority_fee_per_gas,
                keccak(_hex_to_bytes(self.paymaster_and_data)),
            ],
        )

    def hash(self, entry_point: str, chain_id: int) -> str:
        """userOpHash as computed by EntryPoint.getUserOpHash."""
        digest = keccak(
            abi_encode(
                ["bytes32", "address", "uint256"],
                [keccak(self.pack()), to_checksum_address(entry_point), chain_id],
            )
        )
        return "0x" + digest.hex()


@dataclass
class UserOpGasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOpGasEstimate":
        def parse_hex(value: Optional[Any]) -> int:
            if value is None:
                return 0
            return int(value, 16) if isinstance(value, str) else int(value)

        return cls(
            call_gas_limit=parse_hex(data.get("callGasLimit")),
            verification_gas_limit=parse_hex(data.get("verificationGasLimit")),
            pre_verification_gas=parse_hex(data.get("preVerificationGas")),
        )


@dataclass
class UserOpReceipt:
    user_op_hash: str
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def from_rpc(cls, user_op_hash: str, data: Dict[str, Any]) -> "UserOpReceipt":
        """
        Parse ``eth_getUserOperationReceipt``. ``success`` is the inner call's
        outcome; the bundle transaction can land while the call reverts.
        """
        receipt = data.get("receipt") or {}
        gas_used = data.get("actualGasUsed")
        return cls(
            user_op_hash=user_op_hash,
            success=bool(data.get("success")),
            transaction_hash=receipt.get("transactionHash"),
            block_number=int(receipt["blockNumber"], 16) if receipt.get("blockNumber") else None,
            gas_used=int(gas_used, 16) if isinstance(gas_used, str) else gas_used,
            reason=data.get("reason"),
        )
