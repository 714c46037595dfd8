"""
Wallet Data Pipeline

Turns an active delegation plus the cycle decision into a WalletSwapContext:
reads the relevant balance, applies the minimum-value and dust guards, and
computes swap, fee and net amounts. Read-only.
"""

from decimal import Decimal
from typing import Optional, Tuple, Union

import structlog

from ....config import settings
from ....providers.coingecko import CoingeckoProvider, get_coingecko_provider
from ....providers.rpc import ChainRpcProvider, get_chain_rpc_provider
from ...delegation.models import Delegation
from ...recovery import RetryPolicy, with_retry
from ...signal.models import Action, Decision
from .fees import split_swap
from .models import FailureStage, SkipReason, TokenInfo, WalletSkip, WalletStageError, WalletSwapContext

_slog = structlog.stdlib.get_logger("dca_engine.pipeline")


def stablecoin() -> TokenInfo:
    return TokenInfo(
        symbol=settings.stablecoin_symbol,
        address=settings.stablecoin_address,
        decimals=settings.stablecoin_decimals,
    )


def volatile_asset() -> TokenInfo:
    return TokenInfo(
        symbol=settings.volatile_symbol,
        address=settings.volatile_address,
        decimals=settings.volatile_decimals,
    )


def tokens_for(decision: Decision) -> Tuple[TokenInfo, TokenInfo]:
    """(token_in, token_out): buys spend the stablecoin, sells spend the volatile asset."""
    if decision.action == Action.BUY:
        return stablecoin(), volatile_asset()
    if decision.action == Action.SELL:
        return volatile_asset(), stablecoin()
    raise ValueError("A hold decision has no swap direction")


class WalletDataPipeline:
    """Prepares per-wallet swap contexts for one cycle."""

    def __init__(
        self,
        rpc: Optional[ChainRpcProvider] = None,
        prices: Optional[CoingeckoProvider] = None,
        fee_bps: Optional[int] = None,
        min_wallet_value_usd: Optional[Decimal] = None,
        min_swap_usd: Optional[Decimal] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.rpc = rpc or get_chain_rpc_provider()
        self.prices = prices or get_coingecko_provider()
        self.fee_bps = fee_bps if fee_bps is not None else settings.fee_bps
        self.min_wallet_value_usd = (
            min_wallet_value_usd if min_wallet_value_usd is not None else settings.min_wallet_value_usd
        )
        self.min_swap_usd = min_swap_usd if min_swap_usd is not None else settings.min_swap_usd
        self.retry_policy = retry_policy or RetryPolicy.from_settings("balance_read")

    async def volatile_price_usd(self) -> Decimal:
        return await self.prices.get_price_usd(settings.volatile_coingecko_id)

    async def to_usd(self, token: TokenInfo, amount: int) -> Decimal:
        units = Decimal(amount) / (Decimal(10) ** token.decimals)
        if token.address.lower() == settings.stablecoin_address.lower():
            return units
        return units * await self.volatile_price_usd()

    async def prepare(
        self,
        delegation: Delegation,
        decision: Decision,
    ) -> Union[WalletSwapContext, WalletSkip]:
        """
        Build the swap context for one wallet.

        Returns:
            WalletSwapContext, or WalletSkip when the wallet is below a guard

        Raises:
            WalletStageError: if the balance or price could not be read
        """
        wallet = delegation.smart_account
        token_in, token_out = tokens_for(decision)

        outcome = await with_retry(
            lambda: self.rpc.get_erc20_balance(token_in.address, wallet),
            self.retry_policy.named("balance_read"),
        )
        if not outcome.success:
            raise WalletStageError(FailureStage.BALANCE, outcome.error, attempts=outcome.attempts)
        balance = outcome.result

        if balance == 0:
            return WalletSkip(wallet=wallet, reason=SkipReason.ZERO_BALANCE)

        try:
            balance_usd = await self.to_usd(token_in, balance)
        except Exception as e:
            raise WalletStageError.from_exception(FailureStage.BALANCE, e) from e

        if balance_usd < self.min_wallet_value_usd:
            _slog.info(
                "wallet_skipped",
                wallet=wallet,
                reason=SkipReason.BELOW_MIN_VALUE.value,
                balance_usd=str(balance_usd.quantize(Decimal("0.01"))),
            )
            return WalletSkip(
                wallet=wallet,
                reason=SkipReason.BELOW_MIN_VALUE,
                detail=f"${balance_usd:.2f} < ${self.min_wallet_value_usd}",
            )

        swap_amount, fee_amount, net_amount = split_swap(
            balance, decision.percentage_bps, self.fee_bps, cap=delegation.max_amount_per_swap
        )
        net_usd = balance_usd * net_amount / balance

        if net_amount <= 0 or net_usd < self.min_swap_usd:
            _slog.info("wallet_skipped", wallet=wallet, reason=SkipReason.DUST_AMOUNT.value, net_amount=str(net_amount))
            return WalletSkip(wallet=wallet, reason=SkipReason.DUST_AMOUNT, detail=f"net ${net_usd:.4f}")

        _slog.info(
            "wallet_prepared",
            wallet=wallet,
            token_in=token_in.symbol,
            balance=str(balance),
            swap_amount=str(swap_amount),
            fee_amount=str(fee_amount),
            net_amount=str(net_amount),
        )
        return WalletSwapContext(
            delegation=delegation,
            token_in=token_in,
            token_out=token_out,
            balance=balance,
            balance_usd=balance_usd,
            swap_amount=swap_amount,
            fee_amount=fee_amount,
            net_amount=net_amount,
            net_usd=net_usd,
        )
