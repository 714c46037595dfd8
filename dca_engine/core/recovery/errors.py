"""
Error Classification

Defines the failure taxonomy for the execution engine.
Every failure is reduced to one of six kinds; only the transient kinds are
eligible for retry. Unrecognized failures are never retried because a
financial operation must not be resubmitted blindly.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError


class ErrorKind(str, Enum):
    """Kinds of failure the retry controller distinguishes."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    QUOTE_EXPIRED = "quote_expired"
    REVERT = "revert"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMIT, ErrorKind.QUOTE_EXPIRED}
)


@dataclass
class ClassifiedError:
    """A failure reduced to its kind, retry eligibility and message."""

    kind: ErrorKind
    retryable: bool
    message: str
    security: bool = False
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
            "security": self.security,
            "detail": self.detail,
        }


class RecoverableError(Exception):
    """Base class for transient failures that may be retried."""

    kind: ErrorKind = ErrorKind.NETWORK

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class UnrecoverableError(Exception):
    """Base class for failures that must not be retried."""

    kind: ErrorKind = ErrorKind.REVERT
    security: bool = False

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


# Specific recoverable errors
class NetworkError(RecoverableError):
    """Connectivity failure talking to a collaborator."""

    kind = ErrorKind.NETWORK


class SettlementTimeoutError(RecoverableError):
    """Settlement was not observed before the hard timeout.

    The submitted call may still land later; callers must not treat this as
    proof that nothing happened on-chain.
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "Settlement wait timed out", tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class RateLimitError(RecoverableError):
    """Collaborator rate limit exceeded."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str = "Rate limit exceeded (429)", provider: Optional[str] = None):
        super().__init__(message, provider=provider)


class QuoteExpiredError(RecoverableError):
    """Quote is past its validity window and must be re-fetched."""

    kind = ErrorKind.QUOTE_EXPIRED

    def __init__(self, message: str = "Quote expired"):
        super().__init__(message)


# Specific unrecoverable errors
class TransactionRevertedError(UnrecoverableError):
    """Submitted call reverted on-chain or in simulation."""

    kind = ErrorKind.REVERT

    def __init__(
        self,
        message: str = "Transaction reverted",
        tx_hash: Optional[str] = None,
        error_data: Optional[str] = None,
    ):
        super().__init__(message, detail=decode_error_selector(error_data) if error_data else None)
        self.tx_hash = tx_hash
        self.error_data = error_data


class DelegationValidationError(UnrecoverableError):
    """Delegation failed a pre-redemption check."""

    kind = ErrorKind.REVERT


class StaleQuoteError(UnrecoverableError):
    """Quote went stale between attempts; the call must not be sent on it."""

    kind = ErrorKind.QUOTE_EXPIRED

    def __init__(self, message: str = "Quote expired before submission"):
        super().__init__(message)


class RouterNotAllowedError(UnrecoverableError):
    """Routing collaborator returned a target outside the audited allow-list."""

    kind = ErrorKind.REVERT
    security = True

    def __init__(self, router: str):
        super().__init__(f"Router {router} is not in the allow-list")
        self.router = router


# Revert selectors the engine can describe in logs
ERROR_SELECTORS: Dict[str, str] = {
    "0xd81b2f2e": "CaveatViolated - A delegation caveat enforcement failed",
    "0x155ff427": "DelegationNotFound - Delegation hash not registered",
    "0x3a91a018": "ExecutionFailed - Generic execution failure in DelegationManager",
    "0x00000000": "GenericRevert - Execution reverted without reason",
    "0x08c379a0": "Error(string) - Standard revert with message",
    "0x4e487b71": "Panic - Solidity panic (overflow, division by zero, etc)",
    "0x5bf6f916": "TransactionDeadlinePassed - Swap deadline elapsed before inclusion",
}

# Reverts that mean "try again with fresh data" rather than "this will fail again"
TRANSIENT_REVERT_SELECTORS = frozenset({"0x5bf6f916"})

CAVEAT_ENFORCERS: Dict[str, str] = {
    "0x7f20f61b1f09b08d970938f6fa563634d65c4eeb": "AllowedTargetsEnforcer",
    "0x2c21fd0cb9dc8445cb3fb0dc5e7bb0aca01842b5": "AllowedMethodsEnforcer",
    "0x92bf12322527caa612fd31a0e810472bbb106a8f": "IdEnforcer",
    "0x1046bb45c8d673d4ea75321280db34899413c069": "TimestampEnforcer",
    "0x04658b29f6b82ed55274221a06fc97d318e25416": "LimitedCallsEnforcer",
}

_NETWORK_PATTERNS = ("fetch", "network", "econnrefused", "enotfound", "socket", "connection")
_TIMEOUT_PATTERNS = ("timeout", "timed out")
_RATE_LIMIT_PATTERNS = ("rate limit", "429", "too many requests", "exceeded")
_ACCOUNT_ABSTRACTION_PATTERNS = (
    "aa10",
    "aa23",
    "aa24",
    "aa25",
    "aa31",
    "aa33",
    "useroperation reverted",
    "out of gas",
    "signature error",
    "delegation missing signature",
    "invalid delegation",
)
_REVERT_PATTERNS = ("revert", "execution reverted", "insufficient", "transfer amount exceeds")

_SELECTOR_RE = re.compile(r"0x[0-9a-fA-F]{8}")
_URL_RE = re.compile(r"https?://\S+")
_SECRET_RE = re.compile(
    r"((?:api[_-]?key|apikey|token|secret|password|authorization|deploy[_-]?key)\s*[=:]\s*)\S+",
    re.IGNORECASE,
)
_PRIVATE_KEY_RE = re.compile(r"0x[0-9a-fA-F]{64}(?![0-9a-fA-F])")


def decode_error_selector(error_data: Optional[str]) -> str:
    """Map revert data to a readable description. Diagnostics only."""
    if not error_data or len(error_data) < 10:
        return "Unknown error"
    selector = error_data[:10].lower()

    if selector == "0xd81b2f2e" and len(error_data) >= 74:
        caveat_index = int(error_data[66:74], 16)
        return f"CaveatViolated - Caveat at index {caveat_index} failed enforcement"

    if selector == "0x08c379a0" and len(error_data) > 10:
        try:
            (reason,) = abi_decode(["string"], bytes.fromhex(error_data[10:]))
        except (ValueError, DecodingError):
            reason = None
        if reason:
            return f"Error(string) - {reason}"

    if selector == "0x4e487b71" and len(error_data) >= 74:
        code = int(error_data[10:74], 16)
        return f"Panic - Solidity panic code 0x{code:02x}"

    return ERROR_SELECTORS.get(selector, f"Unknown error selector: {selector}")


def extract_error_selector(message: str) -> Optional[str]:
    """Find the first 4-byte selector embedded in an error message."""
    match = _SELECTOR_RE.search(message or "")
    return match.group(0).lower() if match else None


def sanitize_error_message(message: str, max_length: int = 300) -> str:
    """Strip URLs and credentials from a message before it leaves the engine."""
    text = _URL_RE.sub("[url]", message or "")
    text = _SECRET_RE.sub(r"\1[redacted]", text)
    text = _PRIVATE_KEY_RE.sub("[redacted]", text)
    if len(text) > max_length:
        text = text[: max_length - 3] + "..."
    return text


def _classify_message(message: str) -> ErrorKind:
    lowered = message.lower()

    if any(p in lowered for p in _NETWORK_PATTERNS):
        return ErrorKind.NETWORK
    if any(p in lowered for p in _TIMEOUT_PATTERNS):
        return ErrorKind.TIMEOUT
    if any(p in lowered for p in _RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMIT
    if "quote" in lowered and ("expired" in lowered or "stale" in lowered):
        return ErrorKind.QUOTE_EXPIRED
    if any(p in lowered for p in _ACCOUNT_ABSTRACTION_PATTERNS):
        return ErrorKind.REVERT
    if any(p in lowered for p in _REVERT_PATTERNS):
        return ErrorKind.REVERT
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify an exception into a ClassifiedError.

    Typed engine errors carry their own kind. httpx transport failures map
    to network/timeout/rate_limit. Everything else is matched against the
    substring table; anything unmatched is unknown and not retryable.
    """
    message = str(error) or error.__class__.__name__

    if isinstance(error, RecoverableError):
        return ClassifiedError(kind=error.kind, retryable=True, message=message)

    if isinstance(error, TransactionRevertedError):
        selector = error.error_data[:10].lower() if error.error_data else None
        if selector in TRANSIENT_REVERT_SELECTORS:
            return ClassifiedError(
                kind=ErrorKind.QUOTE_EXPIRED,
                retryable=True,
                message=message,
                detail=error.detail,
            )
        return ClassifiedError(kind=ErrorKind.REVERT, retryable=False, message=message, detail=error.detail)

    if isinstance(error, UnrecoverableError):
        return ClassifiedError(
            kind=error.kind,
            retryable=False,
            message=message,
            security=error.security,
            detail=error.detail,
        )

    if isinstance(error, httpx.TimeoutException):
        return ClassifiedError(kind=ErrorKind.TIMEOUT, retryable=True, message=message)
    if isinstance(error, httpx.TransportError):
        return ClassifiedError(kind=ErrorKind.NETWORK, retryable=True, message=message)
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return ClassifiedError(kind=ErrorKind.RATE_LIMIT, retryable=True, message=message)

    kind = _classify_message(message)
    selector = extract_error_selector(message)
    if kind == ErrorKind.REVERT and selector in TRANSIENT_REVERT_SELECTORS:
        kind = ErrorKind.QUOTE_EXPIRED
    return ClassifiedError(
        kind=kind,
        retryable=kind in RETRYABLE_KINDS,
        message=message,
        detail=decode_error_selector(selector) if selector in ERROR_SELECTORS else None,
    )
