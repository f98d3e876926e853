"""
Ledger error taxonomy.

Every failure carries a stable machine-readable code and a human-readable
message. Business-rule failures are recorded on a failed Transaction rather
than raised out of the engine; the rest propagate to the caller.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class FailureCode(Enum):
    """Machine-readable failure causes"""
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ACCOUNT_INACTIVE = "account_inactive"
    CONTENDED = "contended"
    CONVERSION_UNAVAILABLE = "conversion_unavailable"
    INVALID_STATE = "invalid_state"
    INTERNAL = "internal"


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    code = FailureCode.INTERNAL
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code.value, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LedgerError, ValueError):
    """Malformed or missing input; rejected before any state is touched."""

    code = FailureCode.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, {"errors": errors} if errors else None)
        self.errors = errors or []


class NotFoundError(LedgerError):
    """A referenced account or transaction does not exist."""

    code = FailureCode.NOT_FOUND


class InsufficientFundsError(LedgerError):
    """The debit would take the balance below the overdraft floor."""

    code = FailureCode.INSUFFICIENT_FUNDS


class AccountInactiveError(LedgerError):
    """The account is deactivated and cannot take new transactions."""

    code = FailureCode.ACCOUNT_INACTIVE


class ContendedError(LedgerError):
    """A per-account lock could not be acquired within the bounded wait."""

    code = FailureCode.CONTENDED
    retryable = True


class ConversionUnavailableError(LedgerError):
    """No exchange rate is configured for the currency pair."""

    code = FailureCode.CONVERSION_UNAVAILABLE


class InvalidStateError(LedgerError):
    """The requested status transition is not allowed."""

    code = FailureCode.INVALID_STATE


class InternalError(LedgerError):
    """Storage or durability failure."""

    code = FailureCode.INTERNAL
