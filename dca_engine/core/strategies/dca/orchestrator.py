"""
Batch Orchestrator

One cycle: signal -> decision -> (hold and stop) or, for each eligible wallet
in stable order, pipeline -> quote -> authorization -> freshness -> submit ->
record -> fee. Wallets run strictly one after another; a wallet's failure is
recorded and never affects the next one. Only cycle-level problems (ledger
unreachable, operator unfunded) make the cycle fatal.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Union

import structlog

from ....config import settings
from ....logging_config import bind_cycle_context, clear_cycle_context
from ....providers.rpc import ChainRpcProvider, get_chain_rpc_provider
from ...delegation.models import Delegation
from ...delegation.validator import ensure_redeemable
from ...execution.models import SubmissionMode
from ...execution.submitter import ExecutionSubmitter
from ...recovery import ClassifiedError, DelegationValidationError, ErrorKind, classify_error, sanitize_error_message
from ...signal.decision import decide
from ...signal.models import Decision, MarketSignal
from ...signal.provider import MarketSignalProvider, SignalUnavailableError
from .fee_collector import FeeCollector
from .fees import fee_in_output_asset
from .ledger import Ledger
from .models import (
    CycleCounts,
    CycleResult,
    ExecutionRecord,
    FailureStage,
    RecordStatus,
    SimulationOutcome,
    SimulationRow,
    SkipReason,
    WalletSkip,
    WalletStageError,
    WalletSwapContext,
)
from .pipeline import WalletDataPipeline, tokens_for
from .quotes import QuoteValidator

logger = logging.getLogger(__name__)
_slog = structlog.stdlib.get_logger("dca_engine.orchestrator")

WEI_PER_ETH = Decimal(10) ** 18


class CycleAbortedError(Exception):
    """A cycle-level precondition failed; no wallet is processed."""
    pass


def cycle_date_for(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


class BatchOrchestrator:
    """Runs DCA cycles across all active delegations."""

    def __init__(
        self,
        ledger: Ledger,
        signal_provider: Optional[MarketSignalProvider] = None,
        pipeline: Optional[WalletDataPipeline] = None,
        quotes: Optional[QuoteValidator] = None,
        submitter: Optional[ExecutionSubmitter] = None,
        fee_collector: Optional[FeeCollector] = None,
        rpc: Optional[ChainRpcProvider] = None,
        max_wallets: Optional[int] = None,
        inter_wallet_delay_seconds: Optional[float] = None,
        min_operator_balance_eth: Optional[Decimal] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.rpc = rpc or get_chain_rpc_provider()
        self.signal_provider = signal_provider or MarketSignalProvider(clock=clock)
        self.pipeline = pipeline or WalletDataPipeline(rpc=self.rpc)
        self.quotes = quotes or QuoteValidator(clock=clock)
        self.submitter = submitter or ExecutionSubmitter(rpc=self.rpc)
        self.fee_collector = fee_collector or FeeCollector(self.submitter, ledger, rpc=self.rpc, clock=clock)
        self.max_wallets = max_wallets if max_wallets is not None else settings.max_wallets_per_cycle
        self.inter_wallet_delay_seconds = (
            inter_wallet_delay_seconds
            if inter_wallet_delay_seconds is not None
            else settings.inter_wallet_delay_seconds
        )
        self.min_operator_balance_eth = (
            min_operator_balance_eth if min_operator_balance_eth is not None else settings.min_operator_balance_eth
        )
        self._sleep = sleep
        self._clock = clock

    # =========================================================================
    # Cycle
    # =========================================================================

    async def run_cycle(self, wallet_filter: Optional[str] = None, simulate: bool = False) -> CycleResult:
        """
        Run one cycle.

        Args:
            wallet_filter: Restrict the cycle to one smart account or owner address
            simulate: Quote and validate every wallet but submit nothing

        Returns:
            CycleResult; ``success`` is False only when ``fatal`` is set
        """
        cycle_id = uuid.uuid4().hex[:12]
        cycle_date = cycle_date_for(self._clock())
        bind_cycle_context(cycle_id=cycle_id)
        _slog.info("cycle_started", cycle_date=cycle_date, simulate=simulate, wallet_filter=wallet_filter)
        try:
            return await self._run(cycle_id, cycle_date, wallet_filter, simulate)
        except CycleAbortedError as e:
            _slog.error("cycle_fatal", error=sanitize_error_message(str(e)))
            return CycleResult(
                success=False,
                action="abort",
                cycle_id=cycle_id,
                cycle_date=cycle_date,
                fatal=True,
                error=sanitize_error_message(str(e)),
                simulated=simulate,
            )
        finally:
            clear_cycle_context()

    async def _run(
        self,
        cycle_id: str,
        cycle_date: str,
        wallet_filter: Optional[str],
        simulate: bool,
    ) -> CycleResult:
        try:
            signal = await self.signal_provider.get_signal()
        except SignalUnavailableError as e:
            return await self._hold(cycle_id, cycle_date, None, str(e), simulate)

        decision = decide(signal.value)
        _slog.info("decision_made", signal_value=signal.value, source=signal.source.value, **decision.to_dict())
        if decision.is_hold:
            return await self._hold(cycle_id, cycle_date, signal, decision.reason, simulate)

        try:
            delegations = await self.ledger.get_active_delegations(now=int(self._clock()))
        except Exception as e:
            raise CycleAbortedError(f"Could not load delegations: {classify_error(e).message}") from e

        eligible = self._select_wallets(delegations, wallet_filter)

        if not simulate:
            await self._preflight_operator()

        result = CycleResult(
            success=True,
            action=decision.action.value,
            cycle_id=cycle_id,
            cycle_date=cycle_date,
            signal=signal.to_dict(),
            simulated=simulate,
        )

        if not simulate:
            result.fees_pending_reconciliation = await self._reconcile_fees(delegations)

        self.quotes.reset_budget()
        volume: Dict[str, int] = {}
        fees: Dict[str, int] = {}

        for index, delegation in enumerate(eligible):
            bind_cycle_context(wallet=delegation.smart_account)
            try:
                if simulate:
                    result.simulation.append(await self._simulate_wallet(delegation, decision))
                else:
                    outcome = await self._process_wallet(delegation, decision, cycle_date)
                    self._tally(result, outcome, volume, fees)
            finally:
                clear_cycle_context("wallet")

            if index < len(eligible) - 1 and self.inter_wallet_delay_seconds > 0:
                await self._sleep(self.inter_wallet_delay_seconds)

        if simulate:
            result.counts = CycleCounts(
                succeeded=sum(1 for r in result.simulation if r.outcome == SimulationOutcome.PASS),
                failed=sum(1 for r in result.simulation if r.outcome == SimulationOutcome.FAIL),
                skipped=sum(1 for r in result.simulation if r.outcome == SimulationOutcome.SKIP),
            )
            _slog.info("simulation_completed", **result.counts.to_dict())
            return result

        await self._record_protocol_stats(volume, fees)
        try:
            result.fees_pending_reconciliation = await self.ledger.count_pending_fee_reconciliations()
        except Exception as e:
            _slog.warning("fee_backlog_count_failed", error=sanitize_error_message(str(e)))

        await self._write_summary(result, decision, signal)
        _slog.info("cycle_completed", action=result.action, **result.counts.to_dict())
        return result

    async def _hold(
        self,
        cycle_id: str,
        cycle_date: str,
        signal: Optional[MarketSignal],
        reason: str,
        simulate: bool,
    ) -> CycleResult:
        _slog.info("cycle_hold", reason=reason, signal_value=signal.value if signal else None)
        result = CycleResult(
            success=True,
            action="hold",
            cycle_id=cycle_id,
            cycle_date=cycle_date,
            signal=signal.to_dict() if signal else None,
            error=None if signal else reason,
            simulated=simulate,
        )
        if not simulate:
            await self._write_summary(result, None, signal, reason=reason)
        return result

    def _select_wallets(self, delegations: List[Delegation], wallet_filter: Optional[str]) -> List[Delegation]:
        now = int(self._clock())
        live = [d for d in delegations if not d.is_expired(now)]
        if len(live) < len(delegations):
            _slog.info("expired_delegations_excluded", count=len(delegations) - len(live))
        delegations = live

        if wallet_filter:
            wanted = wallet_filter.lower()
            delegations = [
                d for d in delegations
                if d.smart_account.lower() == wanted or d.owner.lower() == wanted
            ]

        ordered = sorted(delegations, key=lambda d: d.smart_account.lower())
        if len(ordered) > self.max_wallets:
            _slog.warning("wallet_cap_applied", eligible=len(ordered), cap=self.max_wallets)
            ordered = ordered[: self.max_wallets]
        _slog.info("wallets_selected", count=len(ordered))
        return ordered

    async def _preflight_operator(self) -> None:
        """Direct mode pays gas from the operator; refuse to start without enough."""
        if self.submitter.mode != SubmissionMode.DIRECT:
            return
        operator = self.submitter.signer.operator_address
        try:
            balance_wei = await self.rpc.get_native_balance(operator)
        except Exception as e:
            raise CycleAbortedError(f"Operator balance check failed: {classify_error(e).message}") from e

        balance_eth = Decimal(balance_wei) / WEI_PER_ETH
        if balance_eth < self.min_operator_balance_eth:
            raise CycleAbortedError(
                f"Operator balance {balance_eth:.6f} ETH below minimum {self.min_operator_balance_eth} ETH"
            )
        _slog.info("operator_preflight_ok", balance_eth=str(balance_eth))

    async def _reconcile_fees(self, delegations: List[Delegation]) -> int:
        by_wallet = {d.smart_account.lower(): d for d in delegations}
        try:
            return await self.fee_collector.reconcile_pending(by_wallet)
        except Exception as e:
            _slog.error("fee_reconciliation_failed", error=sanitize_error_message(classify_error(e).message))
            return 0

    # =========================================================================
    # Per wallet
    # =========================================================================

    def _base_record(self, delegation: Delegation, decision: Decision, cycle_date: str) -> ExecutionRecord:
        token_in, token_out = tokens_for(decision)
        return ExecutionRecord(
            wallet=delegation.smart_account,
            owner=delegation.owner,
            cycle_date=cycle_date,
            action=decision.action.value,
            token_in=token_in.address,
            token_out=token_out.address,
            swap_amount=0,
            fee_amount=0,
            net_amount=0,
            status=RecordStatus.FAILED,
        )

    def _fail(self, record: ExecutionRecord, stage: FailureStage, error: ClassifiedError, attempts: int = 1) -> ExecutionRecord:
        record.status = RecordStatus.FAILED
        record.retry_count = max(attempts - 1, 0)
        record.with_error(error, stage, sanitize_error_message(error.message))
        log = _slog.error if error.security else _slog.warning
        log(
            "wallet_failed",
            stage=stage.value,
            kind=error.kind.value,
            retryable=error.retryable,
            security=error.security,
            detail=error.detail,
            error=record.error_message,
        )
        return record

    async def _process_wallet(
        self,
        delegation: Delegation,
        decision: Decision,
        cycle_date: str,
    ) -> Union[ExecutionRecord, WalletSkip]:
        wallet = delegation.smart_account
        try:
            existing = await self.ledger.get_execution(wallet, cycle_date)
        except Exception as e:
            existing = None
            _slog.warning("execution_lookup_failed", error=sanitize_error_message(str(e)))
        if existing is not None:
            _slog.info("wallet_skipped", reason=SkipReason.ALREADY_PROCESSED.value, status=existing.status.value)
            return WalletSkip(wallet=wallet, reason=SkipReason.ALREADY_PROCESSED)

        record = self._base_record(delegation, decision, cycle_date)
        try:
            outcome = await self._execute_wallet(delegation, decision, record)
        except WalletStageError as e:
            outcome = self._fail(record, e.stage, e.error, e.attempts)
        except Exception as e:
            logger.exception(f"Unexpected error processing wallet {wallet}")
            outcome = self._fail(record, record.stage or FailureStage.SUBMISSION, classify_error(e))

        if isinstance(outcome, ExecutionRecord):
            await self._append_record(outcome)
        return outcome

    async def _execute_wallet(
        self,
        delegation: Delegation,
        decision: Decision,
        record: ExecutionRecord,
    ) -> Union[ExecutionRecord, WalletSkip]:
        prepared = await self.pipeline.prepare(delegation, decision)
        if isinstance(prepared, WalletSkip):
            return prepared

        ctx: WalletSwapContext = prepared
        record.swap_amount = ctx.swap_amount
        record.fee_amount = ctx.fee_amount
        record.net_amount = ctx.net_amount

        quote_outcome = await self.quotes.get_validated_quote(ctx)
        if not quote_outcome.success:
            return self._fail(record, FailureStage.QUOTE, quote_outcome.error, quote_outcome.attempts)
        ctx.quote = quote_outcome.result

        fresh = await self.quotes.ensure_fresh(ctx)
        if not fresh.success:
            return self._fail(record, FailureStage.QUOTE, fresh.error, fresh.attempts)
        quote = fresh.result

        call = quote.to_execution()
        try:
            ensure_redeemable(
                delegation,
                [call],
                now=int(self._clock()),
                expected_delegate=self.submitter.delegate_address or None,
            )
        except DelegationValidationError as e:
            return self._fail(record, FailureStage.VALIDATION, classify_error(e))
        ctx.prepared_call = call

        submission = await self.submitter.submit(
            [(delegation, call)],
            label="swap",
            precheck=lambda: self.quotes.check_fresh(quote),
        )
        record.retry_count = max(submission.attempts - 1, 0)
        record.tx_hash = submission.tx_hash

        fee_out = fee_in_output_asset(ctx.fee_amount, ctx.net_amount, quote.min_amount_out)
        if not submission.success:
            error = submission.error
            stage = FailureStage.SETTLEMENT if submission.stage == "settlement" else FailureStage.SUBMISSION
            if stage == FailureStage.SETTLEMENT and error.kind == ErrorKind.TIMEOUT:
                record.status = RecordStatus.PENDING
                record.with_error(error, stage, sanitize_error_message(error.message))
                record.fee_token = ctx.token_out.address
                record.fee_amount_out = fee_out
                _slog.warning("wallet_pending", tx_hash=submission.tx_hash)
                # The swap may still land; its fee waits on settlement
                await self.fee_collector.defer(
                    delegation, ctx.token_out.address, fee_out, record.cycle_date, swap_reference=submission.tx_hash
                )
                return record
            return self._fail(record, stage, error, submission.attempts)

        record.status = RecordStatus.SUCCESS
        record.amount_out = quote.amount_out
        _slog.info("wallet_swapped", tx_hash=submission.tx_hash, amount_out=str(quote.amount_out))

        record.fee_token = ctx.token_out.address
        record.fee_amount_out = fee_out
        after_swap = replace(delegation, calls_used=delegation.calls_used + 1)
        fee = await self.fee_collector.collect(after_swap, ctx.token_out.address, fee_out, record.cycle_date)
        record.fee_collected = fee.deposited

        redemptions = 1 + (1 if fee.transferred else 0)
        try:
            await self.ledger.increment_delegation_calls(delegation.smart_account, redemptions)
        except Exception as e:
            _slog.error("delegation_calls_update_failed", count=redemptions, error=sanitize_error_message(str(e)))
        return record

    async def _simulate_wallet(self, delegation: Delegation, decision: Decision) -> SimulationRow:
        wallet = delegation.smart_account
        try:
            prepared = await self.pipeline.prepare(delegation, decision)
        except WalletStageError as e:
            return SimulationRow(wallet=wallet, outcome=SimulationOutcome.FAIL, detail=f"{e.stage.value}: {e}")
        if isinstance(prepared, WalletSkip):
            return SimulationRow(
                wallet=wallet,
                outcome=SimulationOutcome.SKIP,
                detail=prepared.reason.value + (f" ({prepared.detail})" if prepared.detail else ""),
            )

        ctx: WalletSwapContext = prepared
        row = SimulationRow(
            wallet=wallet,
            outcome=SimulationOutcome.FAIL,
            swap_amount=ctx.swap_amount,
            net_amount=ctx.net_amount,
        )
        quote_outcome = await self.quotes.get_validated_quote(ctx)
        if not quote_outcome.success:
            row.detail = f"quote: {sanitize_error_message(quote_outcome.error.message)}"
            return row

        quote = quote_outcome.result
        call = quote.to_execution()
        try:
            ensure_redeemable(
                delegation,
                [call],
                now=int(self._clock()),
                expected_delegate=self.submitter.delegate_address or None,
            )
        except DelegationValidationError as e:
            row.detail = f"validation: {e}"
            return row

        row.outcome = SimulationOutcome.PASS
        row.expected_out = quote.amount_out
        row.detail = f"min out {quote.min_amount_out} via {quote.router}"
        return row

    # =========================================================================
    # Ledger
    # =========================================================================

    def _tally(
        self,
        result: CycleResult,
        outcome: Union[ExecutionRecord, WalletSkip],
        volume: Dict[str, int],
        fees: Dict[str, int],
    ) -> None:
        if isinstance(outcome, WalletSkip):
            result.skips.append(outcome)
            result.counts.skipped += 1
            return

        result.records.append(outcome)
        if outcome.status == RecordStatus.SUCCESS:
            result.counts.succeeded += 1
            volume[outcome.token_in] = volume.get(outcome.token_in, 0) + outcome.swap_amount
            if outcome.fee_collected and outcome.fee_token:
                fees[outcome.fee_token] = fees.get(outcome.fee_token, 0) + (outcome.fee_amount_out or 0)
        elif outcome.status == RecordStatus.PENDING:
            result.counts.pending += 1
        else:
            result.counts.failed += 1

    async def _append_record(self, record: ExecutionRecord) -> None:
        try:
            stored = await self.ledger.append_execution(record)
        except Exception as e:
            _slog.error(
                "execution_record_write_failed",
                status=record.status.value,
                tx_hash=record.tx_hash,
                error=sanitize_error_message(str(e)),
            )
            return
        if not stored:
            _slog.warning("execution_record_duplicate", cycle_date=record.cycle_date)

    async def _record_protocol_stats(self, volume: Dict[str, int], fees: Dict[str, int]) -> None:
        if not volume and not fees:
            return
        try:
            await self.ledger.record_protocol_stats(volume, fees)
        except Exception as e:
            _slog.warning("protocol_stats_failed", error=sanitize_error_message(str(e)))

    async def _write_summary(
        self,
        result: CycleResult,
        decision: Optional[Decision],
        signal: Optional[MarketSignal],
        reason: Optional[str] = None,
    ) -> None:
        summary = {
            "cycleId": result.cycle_id,
            "cycleDate": result.cycle_date,
            "action": result.action,
            "reason": reason or (decision.reason if decision else None),
            "percentage": str(decision.percentage) if decision else None,
            "signalValue": signal.value if signal else None,
            "signalSource": signal.source.value if signal else None,
            "feesPendingReconciliation": result.fees_pending_reconciliation,
            **result.counts.to_dict(),
        }
        try:
            await self.ledger.write_cycle_summary(summary)
        except Exception as e:
            _slog.error("cycle_summary_write_failed", error=sanitize_error_message(str(e)))
