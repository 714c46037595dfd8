"""
Error Recovery Module

Provides error classification, revert decoding and the retry controller
used around every network-facing call.
"""

from .errors import (
    ClassifiedError,
    DelegationValidationError,
    ErrorKind,
    NetworkError,
    QuoteExpiredError,
    RateLimitError,
    RecoverableError,
    RouterNotAllowedError,
    SettlementTimeoutError,
    StaleQuoteError,
    TransactionRevertedError,
    UnrecoverableError,
    classify_error,
    decode_error_selector,
    sanitize_error_message,
)
from .retry import LEDGER_RETRY_POLICY, RetryOutcome, RetryPolicy, with_retry

__all__ = [
    # Errors
    "ClassifiedError",
    "ErrorKind",
    "RecoverableError",
    "UnrecoverableError",
    "NetworkError",
    "SettlementTimeoutError",
    "RateLimitError",
    "QuoteExpiredError",
    "StaleQuoteError",
    "TransactionRevertedError",
    "DelegationValidationError",
    "RouterNotAllowedError",
    "classify_error",
    "decode_error_selector",
    "sanitize_error_message",
    # Retry
    "RetryPolicy",
    "RetryOutcome",
    "LEDGER_RETRY_POLICY",
    "with_retry",
]
