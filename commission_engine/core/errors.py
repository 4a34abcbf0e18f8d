"""
Error taxonomy for settlement operations.

Every error is raised before any partial effect is committed: validation and
authorization failures before the first write, conflicts at the atomic
storage guard, persistence failures at the authoritative write itself.
"""
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base exception for settlement engine errors."""

    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SettlementError):
    """Raised when input fails validation. Nothing has been written."""

    status_code = 400


class NotFoundError(SettlementError):
    """Raised when a referenced record does not exist."""

    status_code = 404


class ConflictError(SettlementError):
    """
    Raised when a storage guard rejects the operation.

    For withdrawals this means the request is no longer in the state the
    caller expected (someone else already handled it), or a pending request
    already exists.
    """

    status_code = 409


class AuthorizationError(SettlementError):
    """Raised when the caller lacks the required privilege."""

    status_code = 403


class VerificationFailedError(AuthorizationError):
    """Raised when the secondary one-time credential is missing or wrong."""

    status_code = 401


class PersistenceError(SettlementError):
    """Raised when the authoritative durable write fails."""

    status_code = 503
