"""
Execution models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..recovery.errors import ClassifiedError


class SubmissionMode(str, Enum):
    DIRECT = "direct"         # operator signs and pays gas
    SPONSORED = "sponsored"   # bundler user operation with paymaster


@dataclass
class TxReceipt:
    """Normalized transaction receipt."""

    tx_hash: str
    success: bool
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "TxReceipt":
        def parse_hex(value: Optional[str]) -> Optional[int]:
            return int(value, 16) if value else None

        return cls(
            tx_hash=data.get("transactionHash", ""),
            success=data.get("status") == "0x1",
            block_number=parse_hex(data.get("blockNumber")),
            gas_used=parse_hex(data.get("gasUsed")),
        )


@dataclass
class SubmissionResult:
    """Outcome of submitting one redemption and waiting for settlement."""

    success: bool
    tx_hash: Optional[str] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 1
    stage: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "txHash": self.tx_hash,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "stage": self.stage,
        }
