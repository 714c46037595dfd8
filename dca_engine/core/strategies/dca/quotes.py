"""
Quote & Route Validator

Fetches a route for a wallet's net amount, rejects any executable call whose
target is not an allow-listed router, enforces quote freshness and derives
the minimum acceptable output from a size-dependent slippage tolerance.
"""

import time
from decimal import Decimal
from typing import Callable, Iterable, Optional

import structlog

from ....config import settings
from ....providers.uniswap import UniswapApiError, UniswapTradingProvider, get_uniswap_provider
from ...recovery import (
    ErrorKind,
    QuoteExpiredError,
    RetryOutcome,
    RetryPolicy,
    RouterNotAllowedError,
    UnrecoverableError,
    classify_error,
    with_retry,
)
from .fees import BPS_DENOMINATOR
from .models import SwapQuote, WalletSwapContext

_slog = structlog.stdlib.get_logger("dca_engine.quotes")


class QuoteBudgetExceededError(UnrecoverableError):
    """The cycle already requested its maximum number of quotes."""

    kind = ErrorKind.UNKNOWN


def select_slippage_bps(
    notional_usd: Decimal,
    threshold_usd: Optional[Decimal] = None,
    small_bps: Optional[int] = None,
    large_bps: Optional[int] = None,
) -> int:
    """Wide tolerance strictly below the threshold, narrow at or above it."""
    threshold = threshold_usd if threshold_usd is not None else settings.slippage_threshold_usd
    small = small_bps if small_bps is not None else settings.slippage_small_bps
    large = large_bps if large_bps is not None else settings.slippage_large_bps
    return small if notional_usd < threshold else large


def calculate_min_amount_out(amount_out: int, slippage_bps: int) -> int:
    return amount_out * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def is_router_allowed(router: str, allowlist: Iterable[str]) -> bool:
    """Exact, case-insensitive membership."""
    if not router:
        return False
    return router.lower() in {address.lower() for address in allowlist}


class QuoteValidator:
    """Fetches and validates quotes for one cycle."""

    def __init__(
        self,
        router: Optional[UniswapTradingProvider] = None,
        allowlist: Optional[Iterable[str]] = None,
        validity_seconds: Optional[float] = None,
        refresh_attempts: Optional[int] = None,
        max_quotes: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.router = router or get_uniswap_provider()
        self.allowlist = list(allowlist if allowlist is not None else settings.router_allowlist)
        self.validity_seconds = validity_seconds if validity_seconds is not None else settings.quote_validity_seconds
        self.refresh_attempts = refresh_attempts if refresh_attempts is not None else settings.quote_refresh_attempts
        self.max_quotes = max_quotes if max_quotes is not None else settings.max_quotes_per_cycle
        self.retry_policy = retry_policy or RetryPolicy.from_settings("quote_fetch")
        self._clock = clock
        self.quotes_requested = 0

    def reset_budget(self) -> None:
        self.quotes_requested = 0

    async def _fetch_once(self, ctx: WalletSwapContext, slippage_bps: int) -> SwapQuote:
        if self.quotes_requested >= self.max_quotes:
            raise QuoteBudgetExceededError(
                f"Quote budget exhausted: {self.quotes_requested}/{self.max_quotes} quotes this cycle"
            )
        self.quotes_requested += 1

        route = await self.router.get_quote(
            swapper=ctx.wallet,
            token_in=ctx.token_in.address,
            token_out=ctx.token_out.address,
            amount=ctx.net_amount,
            slippage_bps=slippage_bps,
        )
        if route.amount_out <= 0:
            raise UniswapApiError("Invalid quote response: zero output amount")

        call = await self.router.get_swap_call(route)
        if not is_router_allowed(call.to, self.allowlist):
            _slog.error(
                "router_allowlist_rejected",
                wallet=ctx.wallet,
                router=call.to,
                allowlist=self.allowlist,
            )
            raise RouterNotAllowedError(call.to)

        return SwapQuote(
            token_in=ctx.token_in.address,
            token_out=ctx.token_out.address,
            amount_in=ctx.net_amount,
            amount_out=route.amount_out,
            router=call.to,
            call_data=call.data,
            value=call.value,
            fetched_at=self._clock(),
            slippage_bps=slippage_bps,
            min_amount_out=calculate_min_amount_out(route.amount_out, slippage_bps),
            raw=route.payload,
        )

    async def get_validated_quote(self, ctx: WalletSwapContext) -> RetryOutcome[SwapQuote]:
        """Fetch a quote under the retry controller. Allow-list failures are never retried."""
        slippage_bps = select_slippage_bps(ctx.net_usd)
        outcome = await with_retry(
            lambda: self._fetch_once(ctx, slippage_bps),
            self.retry_policy.named("quote_fetch"),
        )
        if outcome.success:
            quote = outcome.result
            _slog.info(
                "quote_validated",
                wallet=ctx.wallet,
                router=quote.router,
                amount_in=str(quote.amount_in),
                amount_out=str(quote.amount_out),
                min_amount_out=str(quote.min_amount_out),
                slippage_bps=slippage_bps,
            )
        return outcome

    def check_fresh(self, quote: SwapQuote) -> None:
        """Raise QuoteExpiredError if the quote is past its validity window."""
        age = quote.age_seconds(self._clock())
        if age > self.validity_seconds:
            raise QuoteExpiredError(
                f"Quote expired before send: {age:.1f}s old (max {self.validity_seconds:.0f}s)"
            )

    async def ensure_fresh(self, ctx: WalletSwapContext) -> RetryOutcome[SwapQuote]:
        """
        Return a quote that is fresh right now.

        An expired quote is discarded and re-fetched, at most
        ``refresh_attempts`` times; it is never reused.
        """
        quote = ctx.quote
        refreshes = 0
        while True:
            try:
                self.check_fresh(quote)
                return RetryOutcome(result=quote, attempts=refreshes + 1)
            except QuoteExpiredError as e:
                if refreshes >= self.refresh_attempts:
                    return RetryOutcome(error=classify_error(e), attempts=refreshes + 1)
                _slog.warning("quote_expired_refetching", wallet=ctx.wallet, reason=str(e))

            refreshes += 1
            outcome = await self.get_validated_quote(ctx)
            if not outcome.success:
                return outcome
            quote = outcome.result
            ctx.quote = quote
