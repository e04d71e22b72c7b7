"""Error taxonomy for the paper trading core.

Business-level failures (bad input, missing funds, missing positions, market
data outages) are expected steady-state outcomes and are normally reported
through ``OperationResult.error_kind`` rather than raised out of public
operations. ``InvariantViolationError`` is the exception: it signals an
internal bug and always propagates.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification of a failed operation."""
    VALIDATION = "validation_error"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NOT_FOUND = "not_found"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVARIANT_VIOLATION = "invariant_violation"


class TradingError(Exception):
    """Base class for all paper trading errors.

    Attributes:
        kind: Error classification
        message: Human-readable reason
        details: Structured context for callers and logs
    """
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(TradingError):
    """Bad input: non-positive quantity, unknown symbol, missing limit price."""
    kind = ErrorKind.VALIDATION


class InsufficientFundsError(TradingError):
    """Order notional plus fees exceeds the account's buying power."""
    kind = ErrorKind.INSUFFICIENT_FUNDS


class NotFoundError(TradingError):
    """No such account, position or strategy."""
    kind = ErrorKind.NOT_FOUND


class UpstreamUnavailableError(TradingError):
    """Market data gateway failed or timed out."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class InvariantViolationError(TradingError):
    """Internal bookkeeping bug. Never expected in steady state."""
    kind = ErrorKind.INVARIANT_VIOLATION


_ERRORS_BY_KIND = {
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.INSUFFICIENT_FUNDS: InsufficientFundsError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    ErrorKind.INVARIANT_VIOLATION: InvariantViolationError,
}


def error_for_kind(
    kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None
) -> TradingError:
    """Build the exception matching an error kind."""
    return _ERRORS_BY_KIND[kind](message, details)
