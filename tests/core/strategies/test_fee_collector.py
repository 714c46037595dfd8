"""
Tests for fee collection and reconciliation.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import OPERATOR, ROUTER, SMART_ACCOUNT, WETH, FakeSubmitter, fake_rpc, make_delegation
from dca_engine.core.execution.models import SubmissionResult
from dca_engine.core.recovery import ClassifiedError, ErrorKind
from dca_engine.core.strategies.dca import FeeCollector, FeeReconciliationItem, FeeStage, InMemoryLedger

POOL = "0x434B2A0e38FB3E5D2ACFa2a7aE492C2A53E55Ec9"
CYCLE_DATE = "2025-10-09"


def _failed(message: str = "execution reverted") -> SubmissionResult:
    return SubmissionResult(
        success=False,
        error=ClassifiedError(kind=ErrorKind.REVERT, retryable=False, message=message),
        stage="settlement",
    )


def _collector(submitter, ledger, allowance=0, alert_threshold=10, clock=None) -> FeeCollector:
    return FeeCollector(
        submitter,
        ledger,
        rpc=fake_rpc(allowance=allowance),
        reward_pool=POOL,
        batch_size=20,
        alert_threshold=alert_threshold,
        clock=clock,
    )


class TestFeeCollection:
    """Transfer to the operator, then deposit into the reward pool."""

    @pytest.mark.asyncio
    async def test_full_collection_with_approval(self, clock):
        submitter = FakeSubmitter()
        ledger = InMemoryLedger()

        outcome = await _collector(submitter, ledger, clock=clock).collect(make_delegation(), WETH, 1_000, CYCLE_DATE)

        assert outcome.transferred and outcome.deposited
        assert submitter.labels == ["fee_transfer"]
        redemptions, _ = submitter.submitted[0]
        delegation, call = redemptions[0]
        assert call.target == WETH
        assert call.selector == "0xa9059cbb"
        assert OPERATOR[2:].lower() in call.call_data
        assert [label for _, label in submitter.operator_calls] == ["fee_approve", "fee_deposit"]
        assert submitter.operator_calls[1][0].target == POOL
        assert ledger.fee_items == {}

    @pytest.mark.asyncio
    async def test_existing_allowance_skips_approval(self, clock):
        submitter = FakeSubmitter()

        outcome = await _collector(submitter, InMemoryLedger(), allowance=10**30, clock=clock).collect(
            make_delegation(), WETH, 1_000, CYCLE_DATE
        )

        assert outcome.deposited
        assert [label for _, label in submitter.operator_calls] == ["fee_deposit"]

    @pytest.mark.asyncio
    async def test_zero_fee_is_noop(self, clock):
        submitter = FakeSubmitter()
        outcome = await _collector(submitter, InMemoryLedger(), clock=clock).collect(make_delegation(), WETH, 0, CYCLE_DATE)
        assert not outcome.transferred
        assert submitter.submitted == []

    @pytest.mark.asyncio
    async def test_transfer_failure_queues_transfer_item(self, clock):
        submitter = FakeSubmitter(results=[_failed()])
        ledger = InMemoryLedger()

        outcome = await _collector(submitter, ledger, clock=clock).collect(make_delegation(), WETH, 1_000, CYCLE_DATE)

        assert not outcome.transferred
        assert outcome.error == "execution reverted"
        (item,) = ledger.fee_items.values()
        assert item.stage == FeeStage.TRANSFER
        assert item.amount == 1_000
        assert item.attempts == 1
        assert submitter.operator_calls == []

    @pytest.mark.asyncio
    async def test_deposit_failure_queues_deposit_item(self, clock):
        submitter = FakeSubmitter(operator_results=[_failed("deposit reverted")])
        ledger = InMemoryLedger()

        outcome = await _collector(submitter, ledger, allowance=10**30, clock=clock).collect(
            make_delegation(), WETH, 1_000, CYCLE_DATE
        )

        assert outcome.transferred
        assert not outcome.deposited
        (item,) = ledger.fee_items.values()
        assert item.stage == FeeStage.DEPOSIT

    @pytest.mark.asyncio
    async def test_unauthorized_transfer_queued(self, clock):
        # Delegation scoped to the router only: the token transfer is outside it
        delegation = make_delegation(targets=[ROUTER])
        submitter = FakeSubmitter()
        ledger = InMemoryLedger()

        outcome = await _collector(submitter, ledger, clock=clock).collect(delegation, WETH, 1_000, CYCLE_DATE)

        assert not outcome.transferred
        assert "outside the delegation scope" in outcome.error
        assert submitter.submitted == []
        assert len(ledger.fee_items) == 1

    @pytest.mark.asyncio
    async def test_ledger_write_failure_does_not_raise(self, clock):
        submitter = FakeSubmitter(results=[_failed()])
        ledger = InMemoryLedger()
        ledger.add_fee_reconciliation = AsyncMock(side_effect=RuntimeError("ledger down"))

        outcome = await _collector(submitter, ledger, clock=clock).collect(make_delegation(), WETH, 1_000, CYCLE_DATE)

        assert not outcome.transferred


class TestFeeReconciliation:
    """Outstanding items are retried at the start of a cycle."""

    async def _seed(self, ledger, stage, wallet=SMART_ACCOUNT):
        return await ledger.add_fee_reconciliation(
            FeeReconciliationItem(wallet=wallet, cycle_date=CYCLE_DATE, token=WETH, amount=500, stage=stage, attempts=1)
        )

    @pytest.mark.asyncio
    async def test_transfer_item_resolved(self, clock):
        ledger = InMemoryLedger()
        item = await self._seed(ledger, FeeStage.TRANSFER)
        submitter = FakeSubmitter()

        outstanding = await _collector(submitter, ledger, allowance=10**30, clock=clock).reconcile_pending(
            {SMART_ACCOUNT.lower(): make_delegation()}
        )

        assert outstanding == 0
        stored = ledger.fee_items[item.id]
        assert stored.resolved
        assert stored.attempts == 2
        assert submitter.labels == ["fee_transfer"]

    @pytest.mark.asyncio
    async def test_deposit_item_skips_transfer(self, clock):
        ledger = InMemoryLedger()
        await self._seed(ledger, FeeStage.DEPOSIT)
        submitter = FakeSubmitter()

        outstanding = await _collector(submitter, ledger, allowance=10**30, clock=clock).reconcile_pending({})

        assert outstanding == 0
        assert submitter.submitted == []
        assert [label for _, label in submitter.operator_calls] == ["fee_deposit"]

    @pytest.mark.asyncio
    async def test_transfer_item_without_delegation_stays(self, clock):
        ledger = InMemoryLedger()
        item = await self._seed(ledger, FeeStage.TRANSFER)

        outstanding = await _collector(FakeSubmitter(), ledger, clock=clock).reconcile_pending({})

        assert outstanding == 1
        stored = ledger.fee_items[item.id]
        assert not stored.resolved
        assert stored.attempts == 2
        assert stored.last_error == "No active delegation"

    @pytest.mark.asyncio
    async def test_transfer_done_deposit_failed_moves_stage(self, clock):
        ledger = InMemoryLedger()
        item = await self._seed(ledger, FeeStage.TRANSFER)
        submitter = FakeSubmitter(operator_results=[_failed("deposit reverted")])

        await _collector(submitter, ledger, allowance=10**30, clock=clock).reconcile_pending(
            {SMART_ACCOUNT.lower(): make_delegation()}
        )

        stored = ledger.fee_items[item.id]
        assert stored.stage == FeeStage.DEPOSIT
        assert stored.last_error == "deposit reverted"
        assert not stored.resolved


class TestDeferredFees:
    """Fees owed by a swap whose settlement was not observed during the cycle."""

    SWAP_HASH = "0x" + "5a" * 32

    async def _defer(self, ledger, clock):
        await _collector(FakeSubmitter(), ledger, clock=clock).defer(
            make_delegation(max_calls=2), WETH, 500, CYCLE_DATE, swap_reference=self.SWAP_HASH
        )
        (item,) = ledger.fee_items.values()
        return item

    @pytest.mark.asyncio
    async def test_defer_queues_transfer_item(self, clock):
        ledger = InMemoryLedger()

        item = await self._defer(ledger, clock)

        assert item.stage == FeeStage.TRANSFER
        assert item.swap_reference == self.SWAP_HASH
        assert item.attempts == 0
        assert not item.resolved

    @pytest.mark.asyncio
    async def test_unsettled_swap_keeps_item(self, clock):
        ledger = InMemoryLedger([make_delegation(max_calls=2)])
        item = await self._defer(ledger, clock)
        submitter = FakeSubmitter()

        outstanding = await _collector(submitter, ledger, clock=clock).reconcile_pending(
            {SMART_ACCOUNT.lower(): make_delegation(max_calls=2)}
        )

        assert outstanding == 1
        assert submitter.submitted == []
        stored = ledger.fee_items[item.id]
        assert stored.swap_reference == self.SWAP_HASH
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_settled_swap_fee_transferred(self, clock):
        delegation = make_delegation(max_calls=2)
        ledger = InMemoryLedger([delegation])
        item = await self._defer(ledger, clock)
        submitter = FakeSubmitter()
        submitter.settled[self.SWAP_HASH] = True

        outstanding = await _collector(submitter, ledger, allowance=10**30, clock=clock).reconcile_pending(
            {SMART_ACCOUNT.lower(): delegation}
        )

        assert outstanding == 0
        assert submitter.labels == ["fee_transfer"]
        stored = ledger.fee_items[item.id]
        assert stored.resolved
        assert stored.swap_reference is None
        # The swap and the fee transfer both used a redemption
        assert (await ledger.get_delegation(delegation.owner)).calls_used == 2

    @pytest.mark.asyncio
    async def test_settled_swap_on_last_call_fails_transfer(self, clock):
        # One call allowed: the settled swap used it, so the transfer is refused
        delegation = make_delegation(max_calls=1)
        ledger = InMemoryLedger([delegation])
        item = await self._defer(ledger, clock)
        submitter = FakeSubmitter()
        submitter.settled[self.SWAP_HASH] = True

        outstanding = await _collector(submitter, ledger, clock=clock).reconcile_pending(
            {SMART_ACCOUNT.lower(): delegation}
        )

        assert outstanding == 1
        assert submitter.submitted == []
        stored = ledger.fee_items[item.id]
        assert stored.swap_reference is None
        assert not stored.resolved

    @pytest.mark.asyncio
    async def test_reverted_swap_waives_fee(self, clock):
        ledger = InMemoryLedger()
        item = await self._defer(ledger, clock)
        submitter = FakeSubmitter()
        submitter.settled[self.SWAP_HASH] = False

        outstanding = await _collector(submitter, ledger, clock=clock).reconcile_pending({})

        assert outstanding == 0
        assert submitter.submitted == []
        stored = ledger.fee_items[item.id]
        assert stored.resolved
        assert "no fee owed" in stored.last_error
