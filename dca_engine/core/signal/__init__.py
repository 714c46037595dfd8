"""
Market signal and decision engine.

The signal provider lives in ``.provider`` and is imported from there; it
depends on the HTTP providers, which themselves use these models.
"""

from .decision import decide, classify_value
from .models import Action, Decision, MarketSignal, SignalSource

__all__ = [
    "Action",
    "Decision",
    "MarketSignal",
    "SignalSource",
    "decide",
    "classify_value",
]
