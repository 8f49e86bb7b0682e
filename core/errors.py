"""
core/errors.py — Error Taxonomy
================================
Every failure in the ledger subsystem is one of these.
Each carries a `category` (the class), a machine-readable `code` that can be
more specific than the category (e.g. ALREADY_REVOKED is a CONFLICT), and a
`retryable` flag so callers never have to parse messages.

    ValidationError     malformed input                       never retry
    NotFoundError       unknown asset id                      never retry
    ConflictError       duplicate / already revoked / version re-read, then decide
    AuthorizationError  signature / issuer / admin check      never retry
    AuthenticationError missing or invalid admin credential    never retry
    ExpiredError        verification outcome, not a fault     never retry
    ConnectivityError   ledger or store unreachable, timeout  retry with backoff
    RateLimitError      too many requests in the window       retry later
    ConfigurationError  missing / weak key material           fatal at startup
"""

from typing import Optional


class LedgerError(Exception):
    category = "LEDGER_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.category
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.message,
            "category": self.category,
            "code": self.code,
            "retryable": self.retryable,
        }


class ValidationError(LedgerError):
    category = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(LedgerError):
    category = "NOT_FOUND"
    status_code = 404


class ConflictError(LedgerError):
    category = "CONFLICT"
    status_code = 409


class AuthorizationError(LedgerError):
    category = "UNAUTHORIZED"
    status_code = 403


class AuthenticationError(AuthorizationError):
    category = "UNAUTHENTICATED"
    status_code = 401


class ExpiredError(LedgerError):
    category = "EXPIRED"
    status_code = 410


class ConnectivityError(LedgerError):
    category = "CONNECTIVITY_ERROR"
    status_code = 503
    retryable = True


class RateLimitError(LedgerError):
    category = "RATE_LIMITED"
    status_code = 429
    retryable = True


class ConfigurationError(LedgerError):
    category = "CONFIGURATION_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, issues: Optional[list] = None):
        super().__init__(message, code)
        self.issues = issues or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.issues:
            data["issues"] = [str(issue) for issue in self.issues]
        return data


_BY_CATEGORY = {
    cls.category: cls
    for cls in (
        ValidationError, NotFoundError, ConflictError, AuthorizationError, AuthenticationError,
        ExpiredError, ConnectivityError, RateLimitError, ConfigurationError,
    )
}


def error_from_category(category: str, message: str, code: Optional[str] = None) -> LedgerError:
    """Rebuild a typed error from the payload sent back across the contract boundary."""
    return _BY_CATEGORY.get(category, LedgerError)(message, code)
