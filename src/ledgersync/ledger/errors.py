"""
Errors raised at the ledger service boundary, and their user-facing meaning.

Two families matter to the sync engine:

  LedgerSystemicError: the whole batch is doomed (auth expired, no network,
      rate limited, ledger 5xx). The executor aborts the entity-type batch.

  LedgerRecordError: one record was rejected (validation). The executor
      counts it in recordsFailed and carries on with the siblings.
"""
from dataclasses import dataclass
from typing import List, Optional


# ── Exceptions ────────────────────────────────────────────────────────────────

class LedgerError(RuntimeError):
    """Base class for errors talking to the external ledger."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LedgerSystemicError(LedgerError):
    """Aborts the current entity-type batch."""


class LedgerAuthError(LedgerSystemicError):
    """Token missing, expired or rejected (HTTP 401)."""


class LedgerPermissionError(LedgerSystemicError):
    """The connection lacks the scope for this operation (HTTP 403)."""


class LedgerRateLimitError(LedgerSystemicError):
    """Too many requests (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class LedgerUnavailableError(LedgerSystemicError):
    """Network failure, timeout or ledger-side 5xx."""


class LedgerRecordError(LedgerError):
    """A single record was rejected; siblings are unaffected."""


class LedgerValidationError(LedgerRecordError):
    """The ledger rejected the payload (HTTP 400 / ValidationErrors)."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, status_code=400)
        self.errors = errors or [message]


# ── Classification ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    user_message: str
    retryable: bool
    suggested_action: str


TOKEN_EXPIRED = ErrorInfo(
    "TOKEN_EXPIRED",
    "Ledger access token has expired",
    "Your Xero connection has expired. Please reconnect your Xero account.",
    False,
    "Reconnect the Xero account from Finance Settings",
)
RATE_LIMIT = ErrorInfo(
    "RATE_LIMIT",
    "Ledger API rate limit exceeded",
    "Too many requests to Xero. Please wait a moment before trying again.",
    True,
    "Wait 60 seconds and try again",
)
NETWORK_ERROR = ErrorInfo(
    "NETWORK_ERROR",
    "Network connection to the ledger failed",
    "Unable to connect to Xero. Please check your internet connection.",
    True,
    "Check the connection and try again",
)
PERMISSION_DENIED = ErrorInfo(
    "PERMISSION_DENIED",
    "Insufficient permissions for ledger operation",
    "Your Xero account doesn't have the required permissions for this operation.",
    False,
    "Ask your Xero administrator to grant the missing scope",
)
VALIDATION_ERROR = ErrorInfo(
    "VALIDATION_ERROR",
    "Data validation failed",
    "Some data doesn't meet Xero's requirements and couldn't be synced.",
    False,
    "Check data format and required fields",
)
UNKNOWN_ERROR = ErrorInfo(
    "UNKNOWN_ERROR",
    "An unexpected error occurred",
    "Something went wrong with the Xero sync. Please try again.",
    True,
    "Contact support if the problem persists",
)


def classify_error(exc: BaseException) -> ErrorInfo:
    """Map any exception raised during a sync to a user-facing ErrorInfo."""
    if isinstance(exc, LedgerAuthError):
        return TOKEN_EXPIRED
    if isinstance(exc, LedgerRateLimitError):
        return RATE_LIMIT
    if isinstance(exc, LedgerUnavailableError):
        return NETWORK_ERROR
    if isinstance(exc, LedgerPermissionError):
        return PERMISSION_DENIED
    if isinstance(exc, LedgerValidationError):
        return VALIDATION_ERROR

    # Errors from outside the client (e.g. connection loading) only carry text
    text = str(exc).lower()
    if "token" in text and ("expired" in text or "invalid" in text):
        return TOKEN_EXPIRED
    if "rate limit" in text or "too many requests" in text:
        return RATE_LIMIT
    if "network" in text or "connection" in text or "timeout" in text:
        return NETWORK_ERROR
    if "permission" in text or "unauthorized" in text:
        return PERMISSION_DENIED
    if "validation" in text:
        return VALIDATION_ERROR
    return UNKNOWN_ERROR
