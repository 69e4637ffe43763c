"""Core ledger and payment logic."""
from .exceptions import (
    BusinessRuleViolation,
    DuplicateReference,
    InternalError,
    InvalidInput,
    InvalidPhone,
    NotFound,
    SwiftLoanError,
    Unauthorized,
    UpstreamFailure,
)
from .idempotency import ReferenceGenerator
from .ledger import Direction, Ledger
from .phone import normalize_phone

__all__ = [
    "BusinessRuleViolation",
    "Direction",
    "DuplicateReference",
    "InternalError",
    "InvalidInput",
    "InvalidPhone",
    "Ledger",
    "NotFound",
    "ReferenceGenerator",
    "SwiftLoanError",
    "Unauthorized",
    "UpstreamFailure",
    "normalize_phone",
]
