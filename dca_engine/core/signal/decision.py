"""
Decision Engine

Maps a sentiment value to a trade action. Pure and deterministic.
"""

from decimal import Decimal
from typing import List, Tuple

from .models import Action, Decision

# (inclusive upper bound, action, percentage, reason)
DECISION_BANDS: List[Tuple[int, Action, Decimal, str]] = [
    (25, Action.BUY, Decimal("5"), "Extreme Fear"),
    (45, Action.BUY, Decimal("2.5"), "Fear"),
    (54, Action.HOLD, Decimal("0"), "Neutral"),
    (75, Action.SELL, Decimal("2.5"), "Greed"),
    (100, Action.SELL, Decimal("5"), "Extreme Greed"),
]


def classify_value(value: int) -> str:
    """Sentiment label for a 0-100 value using the decision bands."""
    return decide(value).reason


def decide(value: int) -> Decision:
    """Return the decision for a sentiment value in [0, 100].

    Raises:
        ValueError: if the value is not an integer in range
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Sentiment value must be an integer, got {value!r}")
    if value < 0 or value > 100:
        raise ValueError(f"Sentiment value out of range [0, 100]: {value}")

    for upper, action, percentage, reason in DECISION_BANDS:
        if value <= upper:
            return Decision(action=action, percentage=percentage, reason=reason)

    raise AssertionError("unreachable")
