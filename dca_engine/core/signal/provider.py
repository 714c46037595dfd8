"""
Market Signal Provider

Reads the primary sentiment index and falls back to a value derived from
the 24h BTC price change when the primary reading is stale or unavailable.
"""

import math
import time
from typing import Callable, Optional

import structlog

from ...config import settings
from ...providers.coingecko import CoingeckoProvider, get_coingecko_provider
from ...providers.fear_greed import FearGreedProvider, get_fear_greed_provider
from ..recovery import RetryPolicy, sanitize_error_message, with_retry
from .decision import classify_value
from .models import MarketSignal, SignalSource

_slog = structlog.stdlib.get_logger("dca_engine.signal")

BACKUP_EXTREME_FEAR_DROP = -5.0
BACKUP_EXTREME_GREED_RISE = 5.0
BACKUP_EXTREME_FEAR_VALUE = 20
BACKUP_EXTREME_GREED_VALUE = 80
BACKUP_LABEL_SUFFIX = " (Backup Oracle)"


def backup_value_from_change(change_percent: float) -> int:
    """Sentiment value derived from a 24h percentage price change."""
    if change_percent <= BACKUP_EXTREME_FEAR_DROP:
        return BACKUP_EXTREME_FEAR_VALUE
    if change_percent >= BACKUP_EXTREME_GREED_RISE:
        return BACKUP_EXTREME_GREED_VALUE
    # Half-up rounding; the result is always positive here
    value = math.floor(50 + 6 * change_percent + 0.5)
    return max(0, min(100, value))


class SignalUnavailableError(Exception):
    """Neither the primary nor the backup source produced a usable reading."""
    pass


class MarketSignalProvider:
    """Produces the cycle's sentiment reading with staleness handling."""

    def __init__(
        self,
        primary: Optional[FearGreedProvider] = None,
        backup: Optional[CoingeckoProvider] = None,
        staleness_seconds: Optional[int] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.primary = primary or get_fear_greed_provider()
        self.backup = backup or get_coingecko_provider()
        self.staleness_seconds = (
            staleness_seconds if staleness_seconds is not None else settings.signal_staleness_seconds
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings("signal_fetch")
        self._clock = clock

    async def get_signal(self) -> MarketSignal:
        """
        Return a fresh reading from the primary source, or the backup.

        Raises:
            SignalUnavailableError: if both sources fail
        """
        now = int(self._clock())
        outcome = await with_retry(self.primary.get_latest, self.retry_policy.named("signal_primary"))

        if outcome.success:
            signal = outcome.result
            if not signal.is_stale(now, self.staleness_seconds):
                _slog.info(
                    "signal_fetched",
                    source=signal.source.value,
                    value=signal.value,
                    classification=signal.classification,
                )
                return signal
            _slog.warning(
                "signal_stale",
                age_hours=round(signal.age_seconds(now) / 3600, 1),
                threshold_hours=round(self.staleness_seconds / 3600, 1),
            )
        else:
            _slog.warning(
                "signal_primary_failed",
                kind=outcome.error.kind.value,
                error=sanitize_error_message(outcome.error.message),
            )

        return await self._get_backup_signal(now)

    async def _get_backup_signal(self, now: int) -> MarketSignal:
        outcome = await with_retry(
            lambda: self.backup.get_24h_change_percent("bitcoin"),
            self.retry_policy.named("signal_backup"),
        )
        if not outcome.success:
            _slog.error(
                "signal_unavailable",
                kind=outcome.error.kind.value,
                error=sanitize_error_message(outcome.error.message),
            )
            raise SignalUnavailableError("Primary and backup sentiment sources unavailable")

        change = outcome.result
        value = backup_value_from_change(change)
        signal = MarketSignal(
            value=value,
            classification=classify_value(value) + BACKUP_LABEL_SUFFIX,
            timestamp=now,
            source=SignalSource.BACKUP,
        )
        _slog.info("signal_backup_used", btc_change_24h=round(change, 2), value=value)
        return signal
