"""
Market signal and decision models.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict


class SignalSource(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"


class Action(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class MarketSignal:
    """A sentiment reading on a 0-100 scale (0 = extreme fear)."""

    value: int
    classification: str
    timestamp: int
    source: SignalSource = SignalSource.PRIMARY

    def age_seconds(self, now: int) -> int:
        return now - self.timestamp

    def is_stale(self, now: int, threshold_seconds: int) -> bool:
        """A reading exactly ``threshold_seconds`` old is still fresh."""
        return self.age_seconds(now) > threshold_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "classification": self.classification,
            "timestamp": self.timestamp,
            "source": self.source.value,
        }


@dataclass(frozen=True)
class Decision:
    """What the cycle does with the signal: action plus share of balance."""

    action: Action
    percentage: Decimal
    reason: str

    @property
    def is_hold(self) -> bool:
        return self.action == Action.HOLD

    @property
    def percentage_bps(self) -> int:
        """Percentage expressed in basis points (5% -> 500)."""
        return int(self.percentage * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "percentage": str(self.percentage),
            "reason": self.reason,
        }
