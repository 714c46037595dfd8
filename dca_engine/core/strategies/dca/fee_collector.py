"""
Fee Collector

After a successful swap the fee, converted into the swap's output asset, is
moved from the smart account to the operator through the delegation, then
the operator deposits it into the reward pool. A fee failure never touches
the swap: it is written to the ledger as a reconciliation item and retried at
the start of later cycles.
"""

import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

import structlog

from ....config import settings
from ....providers.rpc import ChainRpcProvider, get_chain_rpc_provider
from ...delegation.models import Delegation, Execution
from ...delegation.validator import ensure_redeemable
from ...execution.models import SubmissionResult
from ...execution.submitter import ExecutionSubmitter
from ...execution.tx_builder import build_deposit_rewards, build_erc20_approve, build_erc20_transfer
from ...recovery import classify_error, sanitize_error_message
from .ledger import Ledger
from .models import FeeReconciliationItem, FeeStage

_slog = structlog.stdlib.get_logger("dca_engine.fees")


@dataclass
class FeeCollection:
    """How far one fee got."""
    transferred: bool = False
    deposited: bool = False
    error: Optional[str] = None


class FeeCollector:
    """Transfers fees to the operator and deposits them into the reward pool."""

    def __init__(
        self,
        submitter: ExecutionSubmitter,
        ledger: Ledger,
        rpc: Optional[ChainRpcProvider] = None,
        reward_pool: Optional[str] = None,
        batch_size: Optional[int] = None,
        alert_threshold: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.submitter = submitter
        self.ledger = ledger
        self.rpc = rpc or get_chain_rpc_provider()
        self.reward_pool = reward_pool or settings.reward_pool_address
        self.batch_size = batch_size if batch_size is not None else settings.fee_reconciliation_batch_size
        self.alert_threshold = (
            alert_threshold if alert_threshold is not None else settings.fee_reconciliation_alert_threshold
        )
        self._clock = clock

    @property
    def operator(self) -> str:
        return self.submitter.signer.operator_address

    async def transfer_to_operator(self, delegation: Delegation, token: str, amount: int) -> SubmissionResult:
        """Delegated ERC20 transfer of the fee from the smart account to the operator."""
        call = Execution(target=token, value=0, call_data=build_erc20_transfer(self.operator, amount))
        ensure_redeemable(
            delegation,
            [call],
            now=int(self._clock()),
            expected_delegate=self.submitter.delegate_address or None,
        )
        return await self.submitter.submit([(delegation, call)], label="fee_transfer")

    async def deposit_to_pool(self, token: str, amount: int) -> SubmissionResult:
        """Operator approves the pool if needed, then deposits."""
        allowance = await self.rpc.get_erc20_allowance(token, self.operator, self.reward_pool)
        if allowance < amount:
            approve = Execution(target=token, value=0, call_data=build_erc20_approve(self.reward_pool, amount))
            result = await self.submitter.submit_operator_call(approve, label="fee_approve")
            if not result.success:
                return result
            _slog.info("reward_pool_approved", token=token, amount=str(amount))

        deposit = Execution(target=self.reward_pool, value=0, call_data=build_deposit_rewards(token, amount))
        return await self.submitter.submit_operator_call(deposit, label="fee_deposit")

    async def collect(
        self,
        delegation: Delegation,
        token: str,
        amount: int,
        cycle_date: str,
    ) -> FeeCollection:
        """
        Collect one fee. Never raises; any failure becomes a reconciliation item.

        ``delegation`` must already count the swap's own redemption in
        ``calls_used`` so the transfer is checked against the calls left.
        """
        wallet = delegation.smart_account
        if amount <= 0:
            return FeeCollection()

        outcome = FeeCollection()
        stage = FeeStage.TRANSFER
        try:
            result = await self.transfer_to_operator(delegation, token, amount)
            if result.success:
                outcome.transferred = True
                stage = FeeStage.DEPOSIT
                result = await self.deposit_to_pool(token, amount)
                outcome.deposited = result.success
            if not result.success:
                outcome.error = result.error.message if result.error else "fee submission failed"
        except Exception as e:
            outcome.error = classify_error(e).message

        if outcome.deposited:
            _slog.info("fee_collected", wallet=wallet, token=token, amount=str(amount))
            return outcome

        _slog.warning(
            "fee_collection_failed",
            wallet=wallet,
            token=token,
            amount=str(amount),
            stage=stage.value,
            error=sanitize_error_message(outcome.error or ""),
        )
        await self._queue(
            FeeReconciliationItem(
                wallet=wallet,
                cycle_date=cycle_date,
                token=token,
                amount=amount,
                stage=stage,
                attempts=1,
                last_error=sanitize_error_message(outcome.error or ""),
            )
        )
        return outcome

    async def defer(
        self,
        delegation: Delegation,
        token: str,
        amount: int,
        cycle_date: str,
        swap_reference: Optional[str],
    ) -> None:
        """Queue the fee of a swap whose settlement was not observed in time."""
        if amount <= 0:
            return
        _slog.warning(
            "fee_deferred_until_settlement",
            wallet=delegation.smart_account,
            token=token,
            amount=str(amount),
            swap_reference=swap_reference,
        )
        await self._queue(
            FeeReconciliationItem(
                wallet=delegation.smart_account,
                cycle_date=cycle_date,
                token=token,
                amount=amount,
                stage=FeeStage.TRANSFER,
                last_error="Swap settlement not yet observed",
                swap_reference=swap_reference,
            )
        )

    async def _queue(self, item: FeeReconciliationItem) -> None:
        try:
            await self.ledger.add_fee_reconciliation(item)
        except Exception as e:
            _slog.error(
                "fee_reconciliation_write_failed",
                wallet=item.wallet,
                cycle_date=item.cycle_date,
                token=item.token,
                amount=str(item.amount),
                stage=item.stage.value,
                error=sanitize_error_message(str(e)),
            )

    async def _count_calls(self, wallet: str, count: int) -> None:
        try:
            await self.ledger.increment_delegation_calls(wallet, count)
        except Exception as e:
            _slog.error(
                "delegation_calls_update_failed", wallet=wallet, count=count, error=sanitize_error_message(str(e))
            )

    async def _retry_item(self, item: FeeReconciliationItem, delegations: Dict[str, Delegation]) -> FeeReconciliationItem:
        stage = item.stage
        attempts = item.attempts + 1
        try:
            swap_calls = 0
            if item.swap_reference:
                settled = await self.submitter.settlement_status(item.swap_reference)
                if settled is None:
                    return replace(item, attempts=attempts, last_error="Swap settlement not yet observed")
                if not settled:
                    _slog.info("fee_waived_swap_reverted", wallet=item.wallet, swap_reference=item.swap_reference)
                    return replace(item, attempts=attempts, last_error="Swap reverted; no fee owed", resolved=True)
                swap_calls = 1
                await self._count_calls(item.wallet, swap_calls)
                item = replace(item, swap_reference=None)

            if stage == FeeStage.TRANSFER:
                delegation = delegations.get(item.wallet.lower())
                if delegation is None:
                    return replace(item, attempts=attempts, last_error="No active delegation")
                delegation = replace(delegation, calls_used=delegation.calls_used + swap_calls)
                result = await self.transfer_to_operator(delegation, item.token, item.amount)
                if not result.success:
                    return replace(item, attempts=attempts, last_error=result.error.message)
                await self._count_calls(item.wallet, 1)
                stage = FeeStage.DEPOSIT

            result = await self.deposit_to_pool(item.token, item.amount)
            if not result.success:
                return replace(item, stage=stage, attempts=attempts, last_error=result.error.message)
        except Exception as e:
            return replace(
                item,
                stage=stage,
                attempts=attempts,
                last_error=sanitize_error_message(classify_error(e).message),
            )
        return replace(item, stage=stage, attempts=attempts, last_error=None, resolved=True)

    async def reconcile_pending(self, delegations: Dict[str, Delegation]) -> int:
        """
        Retry up to ``batch_size`` outstanding fee items.

        ``delegations`` maps lowercased smart account to its active
        delegation; transfer-stage items need one. Items deferred behind an
        unconfirmed swap are transferred only once that swap has settled,
        and dropped if it reverted. Returns the number of items still
        outstanding afterwards.
        """
        items = await self.ledger.list_pending_fee_reconciliations(self.batch_size)
        resolved = 0
        for item in items:
            updated = await self._retry_item(item, delegations)
            await self.ledger.update_fee_reconciliation(updated)
            if updated.resolved:
                resolved += 1
                _slog.info("fee_reconciled", wallet=item.wallet, cycle_date=item.cycle_date, token=item.token)

        outstanding = await self.ledger.count_pending_fee_reconciliations()
        if items:
            _slog.info("fee_reconciliation_pass", attempted=len(items), resolved=resolved, outstanding=outstanding)
        if outstanding >= self.alert_threshold:
            _slog.error("fee_reconciliation_backlog", outstanding=outstanding, threshold=self.alert_threshold)
        return outstanding
