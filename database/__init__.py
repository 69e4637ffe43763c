"""Database package for the loan ledger."""
from .connection import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from .models import (
    TERMINAL_STATUSES,
    Base,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    TransactionType,
    User,
)

__all__ = [
    "Base",
    "User",
    "Transaction",
    "TransactionEvent",
    "TransactionStatus",
    "TransactionType",
    "TERMINAL_STATUSES",
    "close_db",
    "create_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
