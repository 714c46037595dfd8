"""
Delegation models.

A delegation is a signed, scoped grant letting the executor redeem calls on
behalf of a user's smart account. Its constraints are carried as caveats:
each caveat is a tagged variant with its own ``validate(now, call)`` check,
and a delegation authorizes a call only when every caveat passes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from eth_utils import to_checksum_address

# Enforcer contracts of the delegation framework deployment on Base
TIMESTAMP_ENFORCER = "0x1046bb45c8d673d4ea75321280db34899413c069"
LIMITED_CALLS_ENFORCER = "0x04658b29f6b82ed55274221a06fc97d318e25416"
ALLOWED_TARGETS_ENFORCER = "0x7f20f61b1f09b08d970938f6fa563634d65c4eeb"
ALLOWED_METHODS_ENFORCER = "0x2c21fd0cb9dc8445cb3fb0dc5e7bb0aca01842b5"

# Root authority: the delegation is not itself derived from another delegation
ROOT_AUTHORITY = "0x" + "f" * 64


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


class DelegationStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class Execution:
    """A single call the executor asks the delegation manager to perform."""

    target: str
    value: int = 0
    call_data: str = "0x"

    @property
    def selector(self) -> str:
        data = _strip_0x(self.call_data)
        return ("0x" + data[:8]).lower() if len(data) >= 8 else "0x"


@dataclass(frozen=True)
class TimeWindow:
    """Calls are allowed only while valid_after <= now <= valid_until."""

    valid_after: int
    valid_until: int
    kind: str = field(default="time_window", init=False)

    def validate(self, now: int, call: Execution) -> bool:
        return self.valid_after <= now <= self.valid_until

    def describe_failure(self, now: int) -> str:
        if now < self.valid_after:
            return f"Delegation not yet valid (starts at {self.valid_after})"
        return f"Delegation expired (ended at {self.valid_until})"


@dataclass(frozen=True)
class CallLimit:
    """Calls are allowed while redemptions remain."""

    max_calls: int
    calls_used: int = 0
    kind: str = field(default="call_limit", init=False)

    @property
    def remaining(self) -> int:
        return max(self.max_calls - self.calls_used, 0)

    def validate(self, now: int, call: Execution) -> bool:
        return self.remaining > 0

    def describe_failure(self, now: int) -> str:
        return f"Delegation call limit reached ({self.calls_used}/{self.max_calls})"


@dataclass(frozen=True)
class AllowedTargets:
    """Calls may only target the listed contracts (case-insensitive)."""

    targets: Tuple[str, ...]
    kind: str = field(default="allowed_targets", init=False)

    def validate(self, now: int, call: Execution) -> bool:
        return call.target.lower() in {t.lower() for t in self.targets}

    def describe_failure(self, now: int) -> str:
        return "Call target is outside the delegation scope"


@dataclass(frozen=True)
class AllowedMethods:
    """Calls may only invoke the listed 4-byte selectors."""

    selectors: Tuple[str, ...]
    kind: str = field(default="allowed_methods", init=False)

    def validate(self, now: int, call: Execution) -> bool:
        return call.selector in {s.lower() for s in self.selectors}

    def describe_failure(self, now: int) -> str:
        return "Call selector is outside the delegation scope"


Caveat = Union[TimeWindow, CallLimit, AllowedTargets, AllowedMethods]


@dataclass(frozen=True)
class EnforcerCaveat:
    """On-chain caveat as signed: enforcer contract, terms and args."""

    enforcer: str
    terms: str = "0x"
    args: str = "0x"

    def to_dict(self) -> Dict[str, str]:
        return {"enforcer": self.enforcer, "terms": self.terms, "args": self.args}


def parse_caveat(raw: EnforcerCaveat, calls_used: int = 0) -> Optional[Caveat]:
    """Interpret a known enforcer's terms. Unknown enforcers return None."""
    enforcer = raw.enforcer.lower()
    terms = _strip_0x(raw.terms)

    if enforcer == TIMESTAMP_ENFORCER and len(terms) >= 64:
        # Two uint128 values: validAfter then validUntil
        return TimeWindow(valid_after=int(terms[0:32], 16), valid_until=int(terms[32:64], 16))

    if enforcer == LIMITED_CALLS_ENFORCER and len(terms) >= 64:
        return CallLimit(max_calls=int(terms[0:64], 16), calls_used=calls_used)

    if enforcer == ALLOWED_TARGETS_ENFORCER and terms and len(terms) % 40 == 0:
        targets = tuple(
            to_checksum_address("0x" + terms[i:i + 40]) for i in range(0, len(terms), 40)
        )
        return AllowedTargets(targets=targets)

    if enforcer == ALLOWED_METHODS_ENFORCER and terms and len(terms) % 8 == 0:
        return AllowedMethods(selectors=tuple("0x" + terms[i:i + 8].lower() for i in range(0, len(terms), 8)))

    return None


@dataclass(frozen=True)
class Delegation:
    """
    A user's grant to the executor.

    Immutable: revocation replaces the record with a revoked one, and expiry
    is derived from the time-window caveat rather than stored.
    """

    owner: str                      # user wallet that granted the delegation
    smart_account: str              # account holding the funds (the delegator)
    delegate: str                   # executor identity allowed to redeem
    signature: str
    enforcer_caveats: Tuple[EnforcerCaveat, ...] = ()
    authority: str = ROOT_AUTHORITY
    salt: int = 0
    status: DelegationStatus = DelegationStatus.ACTIVE
    calls_used: int = 0
    max_amount_per_swap: Optional[int] = None
    delegation_hash: Optional[str] = None

    @property
    def delegator(self) -> str:
        return self.smart_account

    @property
    def caveats(self) -> List[Caveat]:
        parsed = (parse_caveat(c, calls_used=self.calls_used) for c in self.enforcer_caveats)
        return [c for c in parsed if c is not None]

    @property
    def time_window(self) -> Optional[TimeWindow]:
        return next((c for c in self.caveats if isinstance(c, TimeWindow)), None)

    @property
    def allowed_targets(self) -> Tuple[str, ...]:
        return tuple(t for c in self.caveats if isinstance(c, AllowedTargets) for t in c.targets)

    @property
    def allowed_selectors(self) -> Tuple[str, ...]:
        return tuple(s for c in self.caveats if isinstance(c, AllowedMethods) for s in c.selectors)

    @property
    def has_signature(self) -> bool:
        return bool(self.signature) and _strip_0x(self.signature) != ""

    def is_expired(self, now: int) -> bool:
        window = self.time_window
        return window is not None and now > window.valid_until

    def revoked(self) -> "Delegation":
        return replace(self, status=DelegationStatus.REVOKED)

    def to_signed_dict(self) -> Dict[str, Any]:
        """Delegation struct as signed by the user (framework JSON layout)."""
        return {
            "delegate": self.delegate,
            "delegator": self.smart_account,
            "authority": self.authority,
            "caveats": [c.to_dict() for c in self.enforcer_caveats],
            "salt": str(self.salt),
            "signature": self.signature,
        }

    def to_record(self) -> Dict[str, Any]:
        """Ledger record, keyed by owner."""
        window = self.time_window
        return {
            "owner": self.owner,
            "smartAccount": self.smart_account,
            "delegationHash": self.delegation_hash,
            "delegationData": json.dumps(self.to_signed_dict()),
            "status": self.status.value,
            "callsUsed": self.calls_used,
            "maxAmountPerSwap": str(self.max_amount_per_swap) if self.max_amount_per_swap is not None else None,
            "validUntil": window.valid_until if window else None,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Delegation":
        signed = data.get("delegationData") or {}
        if isinstance(signed, str):
            signed = json.loads(signed)

        salt = signed.get("salt", 0)
        if isinstance(salt, str):
            salt = int(salt, 16) if salt.startswith("0x") else int(salt)

        max_amount = data.get("maxAmountPerSwap")
        return cls(
            owner=data["owner"],
            smart_account=data.get("smartAccount") or signed.get("delegator"),
            delegate=signed.get("delegate", ""),
            signature=signed.get("signature", ""),
            enforcer_caveats=tuple(
                EnforcerCaveat(
                    enforcer=c["enforcer"],
                    terms=c.get("terms", "0x"),
                    args=c.get("args", "0x"),
                )
                for c in signed.get("caveats", [])
            ),
            authority=signed.get("authority", ROOT_AUTHORITY),
            salt=salt,
            status=DelegationStatus(data.get("status", DelegationStatus.ACTIVE.value)),
            calls_used=int(data.get("callsUsed") or 0),
            max_amount_per_swap=int(max_amount) if max_amount not in (None, "") else None,
            delegation_hash=data.get("delegationHash"),
        )
