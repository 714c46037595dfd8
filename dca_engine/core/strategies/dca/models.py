"""
DCA Cycle Models

Data models for one sentiment-driven DCA cycle: per-wallet swap context,
quotes, execution records, fee reconciliation items and the cycle result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from ...delegation.models import Delegation, Execution
from ...recovery.errors import ClassifiedError, ErrorKind, classify_error


class RecordStatus(str, Enum):
    """ExecutionRecord status."""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"      # submitted, settlement not observed before timeout


class SkipReason(str, Enum):
    """Reason a wallet was not processed this cycle."""
    ZERO_BALANCE = "zero_balance"
    BELOW_MIN_VALUE = "below_min_value"
    DUST_AMOUNT = "dust_amount"
    ALREADY_PROCESSED = "already_processed"   # record exists for (wallet, cycle_date)


class FailureStage(str, Enum):
    """Where in the per-wallet pipeline a failure happened."""
    BALANCE = "balance"
    QUOTE = "quote"
    VALIDATION = "validation"
    SUBMISSION = "submission"
    SETTLEMENT = "settlement"


class SimulationOutcome(str, Enum):
    PASS = "PASS"
    SKIP = "SKIP"
    FAIL = "FAIL"


class FeeStage(str, Enum):
    """Fee collection step that still needs to happen."""
    TRANSFER = "transfer"    # smart account -> operator
    DEPOSIT = "deposit"      # operator -> reward pool


class WalletStageError(Exception):
    """A per-wallet stage failed after its retries; carries the classified cause."""

    def __init__(self, stage: FailureStage, error: ClassifiedError, attempts: int = 1):
        super().__init__(error.message)
        self.stage = stage
        self.error = error
        self.attempts = attempts

    @classmethod
    def from_exception(cls, stage: FailureStage, exc: Exception, attempts: int = 1) -> WalletStageError:
        return cls(stage, classify_error(exc), attempts=attempts)


@dataclass(frozen=True)
class TokenInfo:
    """Token metadata."""
    symbol: str
    address: str
    decimals: int

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "address": self.address, "decimals": self.decimals}


@dataclass
class SwapQuote:
    """A validated routing quote with its executable call."""
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    router: str
    call_data: str
    value: int
    fetched_at: float
    slippage_bps: int
    min_amount_out: int
    raw: Dict[str, Any] = field(default_factory=dict)

    def age_seconds(self, now: float) -> float:
        return now - self.fetched_at

    def is_expired(self, now: float, validity_seconds: float) -> bool:
        return self.age_seconds(now) > validity_seconds

    def to_execution(self) -> Execution:
        return Execution(target=self.router, value=self.value, call_data=self.call_data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "minAmountOut": str(self.min_amount_out),
            "router": self.router,
            "slippageBps": self.slippage_bps,
        }


@dataclass
class WalletSwapContext:
    """Per-wallet, per-cycle working state. Never persisted."""
    delegation: Delegation
    token_in: TokenInfo
    token_out: TokenInfo
    balance: int
    balance_usd: Decimal
    swap_amount: int
    fee_amount: int
    net_amount: int
    net_usd: Decimal
    quote: Optional[SwapQuote] = None
    prepared_call: Optional[Execution] = None

    @property
    def wallet(self) -> str:
        return self.delegation.smart_account


@dataclass(frozen=True)
class WalletSkip:
    wallet: str
    reason: SkipReason
    detail: str = ""


@dataclass
class ExecutionRecord:
    """
    Outcome of one wallet in one cycle.

    Append-only; the ledger keeps at most one record per (wallet, cycle_date).
    """
    wallet: str
    owner: str
    cycle_date: str
    action: str
    token_in: str
    token_out: str
    swap_amount: int
    fee_amount: int
    net_amount: int
    status: RecordStatus
    amount_out: Optional[int] = None
    fee_token: Optional[str] = None
    fee_amount_out: Optional[int] = None    # fee converted into token_out
    fee_collected: bool = False
    tx_hash: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    error_detail: Optional[str] = None
    security: bool = False
    stage: Optional[FailureStage] = None
    retry_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple:
        return (self.wallet.lower(), self.cycle_date)

    def with_error(self, error: ClassifiedError, stage: FailureStage, message: str) -> "ExecutionRecord":
        self.error_kind = error.kind
        self.error_message = message
        self.error_detail = error.detail
        self.security = error.security
        self.stage = stage
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to ledger document format."""
        return {
            "wallet": self.wallet,
            "owner": self.owner,
            "cycleDate": self.cycle_date,
            "action": self.action,
            "tokenIn": self.token_in,
            "tokenOut": self.token_out,
            "swapAmount": str(self.swap_amount),
            "feeAmount": str(self.fee_amount),
            "netAmount": str(self.net_amount),
            "amountOut": str(self.amount_out) if self.amount_out is not None else None,
            "feeToken": self.fee_token,
            "feeAmountOut": str(self.fee_amount_out) if self.fee_amount_out is not None else None,
            "feeCollected": self.fee_collected,
            "status": self.status.value,
            "txHash": self.tx_hash,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "errorMessage": self.error_message,
            "errorDetail": self.error_detail,
            "security": self.security,
            "stage": self.stage.value if self.stage else None,
            "retryCount": self.retry_count,
            "createdAt": int(self.created_at.timestamp() * 1000),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ExecutionRecord:
        """Create from a ledger document."""
        return cls(
            wallet=data["wallet"],
            owner=data.get("owner", ""),
            cycle_date=data["cycleDate"],
            action=data["action"],
            token_in=data["tokenIn"],
            token_out=data["tokenOut"],
            swap_amount=int(data["swapAmount"]),
            fee_amount=int(data["feeAmount"]),
            net_amount=int(data["netAmount"]),
            status=RecordStatus(data["status"]),
            amount_out=int(data["amountOut"]) if data.get("amountOut") else None,
            fee_token=data.get("feeToken"),
            fee_amount_out=int(data["feeAmountOut"]) if data.get("feeAmountOut") else None,
            fee_collected=bool(data.get("feeCollected")),
            tx_hash=data.get("txHash"),
            error_kind=ErrorKind(data["errorKind"]) if data.get("errorKind") else None,
            error_message=data.get("errorMessage"),
            error_detail=data.get("errorDetail"),
            security=bool(data.get("security")),
            stage=FailureStage(data["stage"]) if data.get("stage") else None,
            retry_count=int(data.get("retryCount") or 0),
            created_at=(
                datetime.fromtimestamp(data["createdAt"] / 1000, tz=timezone.utc)
                if data.get("createdAt") else datetime.now(timezone.utc)
            ),
        )


@dataclass
class FeeReconciliationItem:
    """A fee that was not fully collected and must be retried."""
    wallet: str
    cycle_date: str
    token: str
    amount: int
    stage: FeeStage
    attempts: int = 0
    last_error: Optional[str] = None
    resolved: bool = False
    # Set while the swap that owes this fee has not been seen to settle
    swap_reference: Optional[str] = None
    id: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.wallet.lower(), self.cycle_date)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "cycleDate": self.cycle_date,
            "token": self.token,
            "amount": str(self.amount),
            "stage": self.stage.value,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "resolved": self.resolved,
            "swapReference": self.swap_reference,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FeeReconciliationItem:
        return cls(
            id=data.get("_id") or data.get("id"),
            wallet=data["wallet"],
            cycle_date=data["cycleDate"],
            token=data["token"],
            amount=int(data["amount"]),
            stage=FeeStage(data["stage"]),
            attempts=int(data.get("attempts") or 0),
            last_error=data.get("lastError"),
            resolved=bool(data.get("resolved")),
            swap_reference=data.get("swapReference"),
        )


@dataclass
class SimulationRow:
    """Dry-run verdict for one wallet."""
    wallet: str
    outcome: SimulationOutcome
    detail: str = ""
    swap_amount: Optional[int] = None
    net_amount: Optional[int] = None
    expected_out: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet": self.wallet,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "swapAmount": str(self.swap_amount) if self.swap_amount is not None else None,
            "netAmount": str(self.net_amount) if self.net_amount is not None else None,
            "expectedOut": str(self.expected_out) if self.expected_out is not None else None,
        }


@dataclass
class CycleCounts:
    succeeded: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed + self.pending

    def to_dict(self) -> Dict[str, int]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "skipped": self.skipped,
        }


@dataclass
class CycleResult:
    """
    What the trigger returns.

    ``success`` is False only for a fatal failure (``fatal`` set). A hold and
    a batch with some failed wallets both report success.
    """
    success: bool
    action: str
    cycle_id: str
    cycle_date: str
    counts: CycleCounts = field(default_factory=CycleCounts)
    signal: Optional[Dict[str, Any]] = None
    fatal: bool = False
    error: Optional[str] = None
    simulated: bool = False
    records: List[ExecutionRecord] = field(default_factory=list)
    skips: List[WalletSkip] = field(default_factory=list)
    simulation: List[SimulationRow] = field(default_factory=list)
    fees_pending_reconciliation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "cycleId": self.cycle_id,
            "cycleDate": self.cycle_date,
            "counts": self.counts.to_dict(),
            "signal": self.signal,
            "fatal": self.fatal,
            "error": self.error,
            "simulated": self.simulated,
            "records": [r.to_dict() for r in self.records],
            "skips": [{"wallet": s.wallet, "reason": s.reason.value, "detail": s.detail} for s in self.skips],
            "simulation": [row.to_dict() for row in self.simulation],
            "feesPendingReconciliation": self.fees_pending_reconciliation,
        }
