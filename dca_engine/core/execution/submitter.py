"""
Execution Submitter

Wraps delegated calls in a ``redeemDelegations`` call on the delegation
manager and submits it either as an operator-paid transaction (direct) or as
a sponsored user operation from the executor account (sponsored), then waits
for settlement under a hard timeout.

Submission and settlement are retried separately. Retrying a submission
reuses the same nonce (direct) or nonce key (sponsored), so a first attempt
that lands late makes the retry fail instead of executing twice.
"""

import asyncio
import math
import secrets
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import structlog

from ...config import settings
from ...providers.base import JsonRpcError
from ...providers.bundler import BundlerProvider, get_bundler_provider
from ...providers.paymaster import PaymasterProvider, get_paymaster_provider
from ...providers.rpc import ChainRpcProvider, get_chain_rpc_provider
from ...providers.signer import RemoteSignerProvider, get_signer_provider
from ..delegation.encoding import encode_redeem_delegations
from ..delegation.models import Delegation, Execution
from ..recovery import (
    ClassifiedError,
    ErrorKind,
    QuoteExpiredError,
    RetryPolicy,
    SettlementTimeoutError,
    StaleQuoteError,
    TransactionRevertedError,
    sanitize_error_message,
    with_retry,
)
from .models import SubmissionMode, SubmissionResult
from .userop import UserOperation, compose_nonce
from .tx_builder import build_executor_call

_slog = structlog.stdlib.get_logger("dca_engine.submitter")

# 65-byte placeholder signature accepted by account validation during estimation
DUMMY_SIGNATURE = "0x" + "ff" * 64 + "1c"

GAS_LIMIT_MULTIPLIER_PCT = 120


def _run_precheck(precheck: Optional[Callable[[], None]]) -> None:
    if precheck is None:
        return
    try:
        precheck()
    except QuoteExpiredError as exc:
        raise StaleQuoteError(str(exc)) from exc


def _as_revert(exc: Exception) -> Exception:
    """Turn a node/bundler revert into TransactionRevertedError, keeping revert data."""
    if isinstance(exc, JsonRpcError) and "revert" in str(exc).lower():
        return TransactionRevertedError(str(exc), error_data=exc.data)
    return exc


class ExecutionSubmitter:
    """Submits redemptions and waits for settlement."""

    def __init__(
        self,
        mode: Optional[SubmissionMode] = None,
        rpc: Optional[ChainRpcProvider] = None,
        bundler: Optional[BundlerProvider] = None,
        paymaster: Optional[PaymasterProvider] = None,
        signer: Optional[RemoteSignerProvider] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settlement_timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.mode = mode or SubmissionMode(settings.submission_mode)
        self.rpc = rpc or get_chain_rpc_provider()
        self.bundler = bundler or get_bundler_provider()
        self.paymaster = paymaster or get_paymaster_provider()
        self.signer = signer or get_signer_provider()
        self.retry_policy = retry_policy or RetryPolicy.from_settings("submission")
        self.settlement_timeout_seconds = settlement_timeout_seconds or settings.settlement_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds or settings.receipt_poll_interval_seconds
        self.delegation_manager = settings.delegation_manager_address
        self.entry_point = settings.erc4337_entrypoint_address
        self.executor_account = settings.executor_smart_account
        self._sleep = sleep

    @property
    def delegate_address(self) -> str:
        """Identity that redeems, and therefore the delegate delegations must name."""
        if self.mode == SubmissionMode.SPONSORED:
            return self.executor_account
        return self.signer.operator_address

    def build_redemption(self, redemptions: Sequence[Tuple[Delegation, Execution]]) -> Execution:
        """The outer call: delegation manager redeemDelegations(...)."""
        return Execution(
            target=self.delegation_manager,
            value=0,
            call_data=encode_redeem_delegations(redemptions),
        )

    async def submit(
        self,
        redemptions: Sequence[Tuple[Delegation, Execution]],
        label: str,
        precheck: Optional[Callable[[], None]] = None,
    ) -> SubmissionResult:
        """
        Submit one redemption and wait for it to settle.

        ``precheck`` runs before every send attempt; a quote that has gone
        stale by then stops the submission with a non-retryable
        quote_expired error instead of sending the call.

        Never raises for submission or settlement failures; they are
        returned classified on the result.
        """
        redemption = self.build_redemption(redemptions)
        if self.mode == SubmissionMode.DIRECT:
            return await self._submit_direct(redemption, label, precheck)
        return await self._submit_sponsored(redemption, label, precheck)

    async def submit_operator_call(self, call: Execution, label: str) -> SubmissionResult:
        """Send a plain operator transaction (no delegation), whatever the mode."""
        return await self._submit_direct(call, label)

    # =========================================================================
    # Direct (operator-paid)
    # =========================================================================

    async def settlement_status(self, reference: str) -> Optional[bool]:
        """
        Whether an earlier submission has settled: True if it succeeded,
        False if it reverted, None while no receipt is available.
        """
        if self.mode == SubmissionMode.SPONSORED:
            receipt = await self.bundler.get_user_operation_receipt(reference)
        else:
            receipt = await self.rpc.get_transaction_receipt(reference)
        return None if receipt is None else receipt.success

    async def _submit_direct(
        self,
        redemption: Execution,
        label: str,
        precheck: Optional[Callable[[], None]] = None,
    ) -> SubmissionResult:
        operator = self.signer.operator_address
        nonce_outcome = await with_retry(
            lambda: self.rpc.get_transaction_count(operator, "pending"),
            self.retry_policy.named(f"{label}_nonce"),
        )
        if not nonce_outcome.success:
            return self._failure(label, "submission", nonce_outcome.error, nonce_outcome.attempts)
        nonce = nonce_outcome.result

        async def send() -> str:
            _run_precheck(precheck)
            tx: Dict[str, Any] = {
                "to": redemption.target,
                "data": redemption.call_data,
                "value": hex(redemption.value),
                "nonce": hex(nonce),
            }
            try:
                gas = await self.rpc.estimate_gas({"from": operator, **tx})
            except JsonRpcError as exc:
                raise _as_revert(exc) from exc
            gas_price = await self.rpc.get_gas_price()
            priority_fee = await self.rpc.get_max_priority_fee()
            tx.update(
                gas=hex(gas * GAS_LIMIT_MULTIPLIER_PCT // 100),
                maxFeePerGas=hex(gas_price * 2),
                maxPriorityFeePerGas=hex(priority_fee),
            )
            return await self.signer.send_transaction(tx)

        send_outcome = await with_retry(send, self.retry_policy.named(f"{label}_submit"))
        if not send_outcome.success:
            return self._failure(label, "submission", send_outcome.error, send_outcome.attempts)

        tx_hash = send_outcome.result
        _slog.info("transaction_submitted", label=label, tx_hash=tx_hash, mode=self.mode.value, nonce=nonce)

        async def wait() -> str:
            receipt = await self._poll(lambda: self.rpc.get_transaction_receipt(tx_hash), tx_hash)
            if not receipt.success:
                raise TransactionRevertedError("Transaction reverted on-chain", tx_hash=tx_hash)
            return receipt.tx_hash or tx_hash

        return await self._settle(wait, label, tx_hash, send_outcome.attempts)

    # =========================================================================
    # Sponsored (user operation via bundler + paymaster)
    # =========================================================================

    async def _build_user_operation(self, redemption: Execution, nonce: int) -> UserOperation:
        call_data = build_executor_call(redemption)
        gas_price = await self.rpc.get_gas_price()
        priority_fee = await self.rpc.get_max_priority_fee()

        user_op = UserOperation(
            sender=self.executor_account,
            nonce=nonce,
            init_code="0x",
            call_data=call_data,
            call_gas_limit=0,
            verification_gas_limit=0,
            pre_verification_gas=0,
            max_fee_per_gas=gas_price * 2,
            max_priority_fee_per_gas=priority_fee,
            signature=DUMMY_SIGNATURE,
        )
        try:
            estimate = await self.bundler.estimate_user_operation_gas(user_op, self.entry_point)
        except JsonRpcError as exc:
            raise _as_revert(exc) from exc
        user_op = user_op.with_updates(
            call_gas_limit=estimate.call_gas_limit * GAS_LIMIT_MULTIPLIER_PCT // 100,
            verification_gas_limit=estimate.verification_gas_limit,
            pre_verification_gas=estimate.pre_verification_gas,
        )

        sponsorship = await self.paymaster.sponsor_user_operation(user_op, self.entry_point)
        user_op = user_op.with_updates(paymaster_and_data=sponsorship.paymaster_and_data)
        if sponsorship.gas:
            user_op = user_op.with_updates(
                call_gas_limit=sponsorship.gas.call_gas_limit,
                verification_gas_limit=sponsorship.gas.verification_gas_limit,
                pre_verification_gas=sponsorship.gas.pre_verification_gas,
            )

        user_op_hash = user_op.hash(self.entry_point, settings.chain_id)
        signature = await self.signer.sign_user_operation_hash(user_op_hash)
        return user_op.with_updates(signature=signature)

    async def _submit_sponsored(
        self,
        redemption: Execution,
        label: str,
        precheck: Optional[Callable[[], None]] = None,
    ) -> SubmissionResult:
        # Fresh 192-bit key per submission; sequence 0 under a new key
        nonce = compose_nonce(secrets.randbits(192), 0)

        async def send() -> str:
            _run_precheck(precheck)
            user_op = await self._build_user_operation(redemption, nonce)
            try:
                return await self.bundler.send_user_operation(user_op, self.entry_point)
            except JsonRpcError as exc:
                raise _as_revert(exc) from exc

        send_outcome = await with_retry(send, self.retry_policy.named(f"{label}_submit"))
        if not send_outcome.success:
            return self._failure(label, "submission", send_outcome.error, send_outcome.attempts)

        user_op_hash = send_outcome.result
        _slog.info("user_operation_submitted", label=label, user_op_hash=user_op_hash)

        async def wait() -> str:
            receipt = await self._poll(lambda: self.bundler.get_user_operation_receipt(user_op_hash), user_op_hash)
            if not receipt.success:
                raise TransactionRevertedError(
                    f"UserOperation reverted: {receipt.reason or 'no reason'}",
                    tx_hash=receipt.transaction_hash,
                    error_data=receipt.reason if receipt.reason and receipt.reason.startswith("0x") else None,
                )
            return receipt.transaction_hash or user_op_hash

        return await self._settle(wait, label, user_op_hash, send_outcome.attempts)

    # =========================================================================
    # Settlement
    # =========================================================================

    async def _poll(self, fetch: Callable[[], Awaitable[Any]], reference: str) -> Any:
        """Poll for a receipt until one appears or the hard timeout elapses."""
        polls = max(1, math.ceil(self.settlement_timeout_seconds / self.poll_interval_seconds))
        for _ in range(polls):
            receipt = await fetch()
            if receipt is not None:
                return receipt
            await self._sleep(self.poll_interval_seconds)
        raise SettlementTimeoutError(
            f"Settlement not observed within {self.settlement_timeout_seconds}s timeout",
            tx_hash=reference,
        )

    async def _settle(
        self,
        wait: Callable[[], Awaitable[str]],
        label: str,
        reference: str,
        submit_attempts: int,
    ) -> SubmissionResult:
        outcome = await with_retry(wait, self.retry_policy.named(f"{label}_settlement"))
        attempts = submit_attempts + outcome.attempts - 1
        if outcome.success:
            _slog.info("settlement_confirmed", label=label, tx_hash=outcome.result)
            return SubmissionResult(success=True, tx_hash=outcome.result, attempts=attempts)

        result = self._failure(label, "settlement", outcome.error, attempts)
        result.tx_hash = reference
        return result

    def _failure(self, label: str, stage: str, error: ClassifiedError, attempts: int) -> SubmissionResult:
        _slog.error(
            "submission_failed",
            label=label,
            stage=stage,
            kind=error.kind.value,
            retryable=error.retryable,
            detail=error.detail,
            error=sanitize_error_message(error.message),
        )
        return SubmissionResult(
            success=False,
            error=error,
            attempts=attempts,
            stage=stage,
            details={"timed_out": error.kind == ErrorKind.TIMEOUT},
        )
