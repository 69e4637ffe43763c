"""
Error taxonomy shared by the ledger, the reconciler and the API.

Every error may carry the transaction reference it concerns so the API can
hand the reference back to the caller even when the request failed.
"""
from typing import Optional


class SwiftLoanError(Exception):
    """Base exception for the payments service."""

    status_code = 500

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reference = reference


class InvalidInput(SwiftLoanError):
    """Raised for user-correctable input problems (bad phone, bad amount)."""

    status_code = 400


class InvalidPhone(InvalidInput):
    """Raised when a phone number cannot be normalized."""

    def __init__(self, message: str = "Invalid phone format", reference: Optional[str] = None):
        super().__init__(message, reference)


class BusinessRuleViolation(SwiftLoanError):
    """Raised when a request breaks a product rule (fee unpaid, low balance)."""

    status_code = 400


class NotFound(SwiftLoanError):
    """Raised when a transaction or receipt does not exist."""

    status_code = 404


class DuplicateReference(SwiftLoanError):
    """Raised when a transaction reference is already taken."""

    status_code = 409


class UpstreamFailure(SwiftLoanError):
    """Raised when the payment gateway refuses a request or cannot be reached."""

    status_code = 400


class InternalError(SwiftLoanError):
    """Raised for store or unexpected failures. Only a generic message is exposed."""

    status_code = 500


class Unauthorized(SwiftLoanError):
    """Raised when an admin endpoint is called without a valid token."""

    status_code = 401
