"""
Pre-redemption delegation checks.

Every check failure is final for the wallet in this cycle: the call is
rejected, never narrowed or widened to fit the delegation.
"""

from typing import List, Optional, Sequence

import structlog

from ..recovery.errors import DelegationValidationError
from .models import (
    AllowedMethods,
    AllowedTargets,
    Delegation,
    DelegationStatus,
    Execution,
    TimeWindow,
)

_slog = structlog.stdlib.get_logger("dca_engine.delegation")

EXPIRY_WARNING_SECONDS = 7 * 24 * 60 * 60


def validate_delegation(
    delegation: Delegation,
    call: Execution,
    now: int,
    expected_delegate: Optional[str] = None,
) -> List[str]:
    """
    Check a delegation against one call.

    Returns:
        List of validation errors (empty if the call is authorized)
    """
    errors: List[str] = []

    if delegation.status != DelegationStatus.ACTIVE:
        errors.append(f"Delegation is {delegation.status.value}")

    if not delegation.has_signature:
        errors.append("Delegation missing signature")

    if expected_delegate and delegation.delegate.lower() != expected_delegate.lower():
        errors.append("Delegation delegate does not match the executor")

    caveats = delegation.caveats
    if not any(isinstance(c, TimeWindow) for c in caveats):
        errors.append("Delegation has no validity window")
    if not any(isinstance(c, AllowedTargets) for c in caveats):
        errors.append("Delegation has no allowed targets")
    if not any(isinstance(c, AllowedMethods) for c in caveats):
        errors.append("Delegation has no allowed methods")

    for caveat in caveats:
        if not caveat.validate(now, call):
            errors.append(caveat.describe_failure(now))

    return errors


def ensure_redeemable(
    delegation: Delegation,
    calls: Sequence[Execution],
    now: int,
    expected_delegate: Optional[str] = None,
) -> None:
    """
    Raise unless every call is authorized by the delegation.

    Raises:
        DelegationValidationError: on the first call that fails any check
    """
    for call in calls:
        errors = validate_delegation(delegation, call, now, expected_delegate)
        if errors:
            _slog.warning(
                "delegation_rejected",
                smart_account=delegation.smart_account,
                target=call.target,
                selector=call.selector,
                errors=errors,
            )
            raise DelegationValidationError(f"Invalid delegation: {'; '.join(errors)}")

    window = delegation.time_window
    if window and window.valid_until - now < EXPIRY_WARNING_SECONDS:
        _slog.info(
            "delegation_expiring_soon",
            smart_account=delegation.smart_account,
            valid_until=window.valid_until,
        )
