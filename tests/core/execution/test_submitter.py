"""
Tests for the execution submitter: direct and sponsored paths, settlement
timeout and revert handling.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import OPERATOR, make_delegation, swap_call
from dca_engine.config import settings
from dca_engine.core.execution.models import SubmissionMode, TxReceipt
from dca_engine.core.execution.submitter import ExecutionSubmitter
from dca_engine.core.execution.userop import UserOpGasEstimate, UserOpReceipt
from dca_engine.core.recovery import ErrorKind, NetworkError, QuoteExpiredError
from dca_engine.providers.base import JsonRpcError
from dca_engine.providers.paymaster import Sponsorship

TX_HASH = "0x" + "aa" * 32
EXECUTOR = "0x4444444444444444444444444444444444444444"


def _rpc() -> MagicMock:
    rpc = MagicMock()
    rpc.get_transaction_count = AsyncMock(return_value=5)
    rpc.estimate_gas = AsyncMock(return_value=100_000)
    rpc.get_gas_price = AsyncMock(return_value=1_000)
    rpc.get_max_priority_fee = AsyncMock(return_value=10)
    rpc.get_transaction_receipt = AsyncMock(return_value=TxReceipt(tx_hash=TX_HASH, success=True))
    return rpc


def _signer() -> MagicMock:
    signer = MagicMock(operator_address=OPERATOR)
    signer.send_transaction = AsyncMock(return_value=TX_HASH)
    signer.sign_user_operation_hash = AsyncMock(return_value="0x" + "cd" * 65)
    return signer


def _submitter(mode: SubmissionMode, policy, rpc=None, signer=None, bundler=None, paymaster=None):
    submitter = ExecutionSubmitter(
        mode=mode,
        rpc=rpc or _rpc(),
        bundler=bundler or MagicMock(),
        paymaster=paymaster or MagicMock(),
        signer=signer or _signer(),
        retry_policy=policy,
        settlement_timeout_seconds=60,
        poll_interval_seconds=2,
        sleep=AsyncMock(),
    )
    submitter.executor_account = EXECUTOR
    return submitter


# =============================================================================
# Direct Mode
# =============================================================================

class TestDirectSubmission:
    """Operator-paid redemption transactions."""

    @pytest.mark.asyncio
    async def test_success(self, no_wait_policy):
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert result.success
        assert result.tx_hash == TX_HASH
        assert result.attempts == 1
        tx = submitter.signer.send_transaction.await_args.args[0]
        assert tx["to"] == settings.delegation_manager_address
        assert tx["nonce"] == hex(5)
        assert tx["gas"] == hex(120_000)
        assert tx["data"].startswith(submitter.build_redemption([(make_delegation(), swap_call())]).call_data[:10])

    @pytest.mark.asyncio
    async def test_retry_reuses_nonce(self, no_wait_policy):
        signer = _signer()
        signer.send_transaction = AsyncMock(side_effect=[NetworkError("connection reset"), TX_HASH])
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, signer=signer)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert result.success
        assert result.attempts == 2
        submitter.rpc.get_transaction_count.assert_awaited_once()
        nonces = [c.args[0]["nonce"] for c in signer.send_transaction.await_args_list]
        assert nonces == [hex(5), hex(5)]

    @pytest.mark.asyncio
    async def test_estimate_revert_not_retried(self, no_wait_policy):
        rpc = _rpc()
        rpc.estimate_gas = AsyncMock(
            side_effect=JsonRpcError("chain_rpc", {"code": 3, "message": "execution reverted", "data": "0x155ff427"})
        )
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, rpc=rpc)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert not result.success
        assert result.stage == "submission"
        assert result.error.kind == ErrorKind.REVERT
        assert result.error.detail.startswith("DelegationNotFound")
        assert rpc.estimate_gas.await_count == 1
        submitter.signer.send_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_settlement_timeout(self, no_wait_policy):
        rpc = _rpc()
        rpc.get_transaction_receipt = AsyncMock(return_value=None)
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, rpc=rpc)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert not result.success
        assert result.stage == "settlement"
        assert result.error.kind == ErrorKind.TIMEOUT
        assert result.details["timed_out"] is True
        assert result.tx_hash == TX_HASH
        # 60s timeout / 2s interval = 30 polls per settlement attempt
        assert rpc.get_transaction_receipt.await_count == 90
        assert result.attempts == 3
        # Settlement retries never resubmit
        submitter.signer.send_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_onchain_revert(self, no_wait_policy):
        rpc = _rpc()
        rpc.get_transaction_receipt = AsyncMock(return_value=TxReceipt(tx_hash=TX_HASH, success=False))
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, rpc=rpc)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert not result.success
        assert result.stage == "settlement"
        assert result.error.kind == ErrorKind.REVERT
        assert rpc.get_transaction_receipt.await_count == 1

    @pytest.mark.asyncio
    async def test_nonce_failure(self, no_wait_policy):
        rpc = _rpc()
        rpc.get_transaction_count = AsyncMock(side_effect=NetworkError("connection refused"))
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, rpc=rpc)

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap")

        assert not result.success
        assert result.stage == "submission"
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_stale_quote_stops_resend(self, no_wait_policy):
        signer = _signer()
        signer.send_transaction = AsyncMock(side_effect=[NetworkError("connection reset"), TX_HASH])
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, signer=signer)
        checks = []

        def precheck():
            checks.append(True)
            if len(checks) > 1:
                raise QuoteExpiredError("Quote expired: 31s old, valid for 30s")

        result = await submitter.submit([(make_delegation(), swap_call())], label="swap", precheck=precheck)

        assert not result.success
        assert result.stage == "submission"
        assert result.error.kind == ErrorKind.QUOTE_EXPIRED
        assert result.error.retryable is False
        assert result.attempts == 2
        assert len(checks) == 2
        signer.send_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_settlement_status(self, no_wait_policy):
        rpc = _rpc()
        rpc.get_transaction_receipt = AsyncMock(
            side_effect=[None, TxReceipt(tx_hash=TX_HASH, success=True), TxReceipt(tx_hash=TX_HASH, success=False)]
        )
        submitter = _submitter(SubmissionMode.DIRECT, no_wait_policy, rpc=rpc)

        assert await submitter.settlement_status(TX_HASH) is None
        assert await submitter.settlement_status(TX_HASH) is True
        assert await submitter.settlement_status(TX_HASH) is False

    def test_delegate_is_operator(self, no_wait_policy):
        assert _submitter(SubmissionMode.DIRECT, no_wait_policy).delegate_address == OPERATOR


# =============================================================================
# Sponsored Mode
# =============================================================================

def _bundler(receipt=None) -> MagicMock:
    bundler = MagicMock()
    bundler.estimate_user_operation_gas = AsyncMock(
        return_value=UserOpGasEstimate(call_gas_limit=100_000, verification_gas_limit=60_000, pre_verification_gas=21_000)
    )
    bundler.send_user_operation = AsyncMock(return_value="0x" + "bb" * 32)
    bundler.get_user_operation_receipt = AsyncMock(
        return_value=receipt or UserOpReceipt(user_op_hash="0x" + "bb" * 32, success=True, transaction_hash=TX_HASH)
    )
    return bundler


def _paymaster() -> MagicMock:
    paymaster = MagicMock()
    paymaster.sponsor_user_operation = AsyncMock(return_value=Sponsorship(paymaster_and_data="0x" + "12" * 20))
    return paymaster


class TestSponsoredSubmission:
    """User operations through the bundler and paymaster."""

    @pytest.mark.asyncio
    async def test_success(self, no_wait_policy):
        bundler = _bundler()
        submitter = _submitter(SubmissionMode.SPONSORED, no_wait_policy, bundler=bundler, paymaster=_paymaster())

        result = await submitter.submit([(make_delegation(delegate=EXECUTOR), swap_call())], label="swap")

        assert result.success
        assert result.tx_hash == TX_HASH
        user_op = bundler.send_user_operation.await_args.args[0]
        assert user_op.sender == EXECUTOR
        assert user_op.nonce & (2**64 - 1) == 0
        assert user_op.call_gas_limit == 120_000
        assert user_op.paymaster_and_data == "0x" + "12" * 20
        assert user_op.signature == "0x" + "cd" * 65
        submitter.signer.send_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_fresh_nonce_key_per_submission(self, no_wait_policy):
        bundler = _bundler()
        submitter = _submitter(SubmissionMode.SPONSORED, no_wait_policy, bundler=bundler, paymaster=_paymaster())

        await submitter.submit([(make_delegation(delegate=EXECUTOR), swap_call())], label="swap")
        await submitter.submit([(make_delegation(delegate=EXECUTOR), swap_call())], label="swap")

        first, second = [c.args[0].nonce for c in bundler.send_user_operation.await_args_list]
        assert first >> 64 != second >> 64

    @pytest.mark.asyncio
    async def test_user_operation_revert(self, no_wait_policy):
        receipt = UserOpReceipt(user_op_hash="0x" + "bb" * 32, success=False, transaction_hash=TX_HASH, reason="0xd81b2f2e")
        submitter = _submitter(
            SubmissionMode.SPONSORED, no_wait_policy, bundler=_bundler(receipt), paymaster=_paymaster()
        )

        result = await submitter.submit([(make_delegation(delegate=EXECUTOR), swap_call())], label="swap")

        assert not result.success
        assert result.stage == "settlement"
        assert result.error.kind == ErrorKind.REVERT

    @pytest.mark.asyncio
    async def test_operator_call_always_direct(self, no_wait_policy):
        bundler = _bundler()
        submitter = _submitter(SubmissionMode.SPONSORED, no_wait_policy, bundler=bundler, paymaster=_paymaster())

        result = await submitter.submit_operator_call(swap_call(), label="fee_deposit")

        assert result.success
        submitter.signer.send_transaction.assert_awaited_once()
        bundler.send_user_operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_stale_quote_never_sent(self, no_wait_policy):
        bundler = _bundler()
        submitter = _submitter(SubmissionMode.SPONSORED, no_wait_policy, bundler=bundler, paymaster=_paymaster())

        def precheck():
            raise QuoteExpiredError()

        result = await submitter.submit(
            [(make_delegation(delegate=EXECUTOR), swap_call())], label="swap", precheck=precheck
        )

        assert not result.success
        assert result.error.kind == ErrorKind.QUOTE_EXPIRED
        assert result.attempts == 1
        bundler.estimate_user_operation_gas.assert_not_called()
        bundler.send_user_operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_settlement_status_from_bundler(self, no_wait_policy):
        bundler = _bundler()
        submitter = _submitter(SubmissionMode.SPONSORED, no_wait_policy, bundler=bundler)

        assert await submitter.settlement_status("0x" + "bb" * 32) is True
        bundler.get_user_operation_receipt.assert_awaited_once_with("0x" + "bb" * 32)
        submitter.rpc.get_transaction_receipt.assert_not_called()

    def test_delegate_is_executor(self, no_wait_policy):
        assert _submitter(SubmissionMode.SPONSORED, no_wait_policy).delegate_address == EXECUTOR
