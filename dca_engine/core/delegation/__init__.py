"""
Delegation (authorization) model, validation and redemption encoding.
"""

from .encoding import encode_execution, encode_permission_context, encode_redeem_delegations
from .models import (
    AllowedMethods,
    AllowedTargets,
    CallLimit,
    Caveat,
    Delegation,
    DelegationStatus,
    EnforcerCaveat,
    Execution,
    TimeWindow,
    parse_caveat,
)
from .validator import ensure_redeemable, validate_delegation

__all__ = [
    "AllowedMethods",
    "AllowedTargets",
    "CallLimit",
    "Caveat",
    "Delegation",
    "DelegationStatus",
    "EnforcerCaveat",
    "Execution",
    "TimeWindow",
    "parse_caveat",
    "encode_execution",
    "encode_permission_context",
    "encode_redeem_delegations",
    "ensure_redeemable",
    "validate_delegation",
]
