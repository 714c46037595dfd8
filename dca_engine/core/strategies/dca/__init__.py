"""
Sentiment-driven DCA Strategy Module

Runs periodic, fee-deducted, slippage-protected swaps across delegated smart
accounts.
"""

from .models import (
    CycleCounts,
    CycleResult,
    ExecutionRecord,
    FailureStage,
    FeeReconciliationItem,
    FeeStage,
    RecordStatus,
    SimulationOutcome,
    SimulationRow,
    SkipReason,
    SwapQuote,
    TokenInfo,
    WalletSkip,
    WalletStageError,
    WalletSwapContext,
)
from .fees import calculate_amount_after_fee, calculate_fee, calculate_swap_amount, fee_in_output_asset, split_swap
from .ledger import ConvexLedger, InMemoryLedger, Ledger, LedgerError, get_ledger
from .pipeline import WalletDataPipeline
from .quotes import QuoteValidator, calculate_min_amount_out, is_router_allowed, select_slippage_bps
from .fee_collector import FeeCollection, FeeCollector
from .orchestrator import BatchOrchestrator, CycleAbortedError

__all__ = [
    # Models
    "CycleCounts",
    "CycleResult",
    "ExecutionRecord",
    "FailureStage",
    "FeeReconciliationItem",
    "FeeStage",
    "RecordStatus",
    "SimulationOutcome",
    "SimulationRow",
    "SkipReason",
    "SwapQuote",
    "TokenInfo",
    "WalletSkip",
    "WalletStageError",
    "WalletSwapContext",
    # Fees
    "calculate_amount_after_fee",
    "calculate_fee",
    "calculate_swap_amount",
    "fee_in_output_asset",
    "split_swap",
    # Ledger
    "Ledger",
    "LedgerError",
    "InMemoryLedger",
    "ConvexLedger",
    "get_ledger",
    # Components
    "WalletDataPipeline",
    "QuoteValidator",
    "calculate_min_amount_out",
    "is_router_allowed",
    "select_slippage_bps",
    "FeeCollection",
    "FeeCollector",
    "BatchOrchestrator",
    "CycleAbortedError",
]
