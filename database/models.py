"""SQLAlchemy database models for the loan ledger."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionType(str, Enum):
    SERVICE_FEE = "service_fee"
    WITHDRAWAL = "withdrawal"
    LOAN_DISBURSEMENT = "loan_disbursement"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
        TransactionStatus.CANCELLED.value,
        TransactionStatus.ERROR.value,
        TransactionStatus.TIMED_OUT.value,
    }
)


def _in_clause(values: Any) -> str:
    return ", ".join(f"'{v.value}'" for v in values)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Ledger account keyed by canonical phone number.

    Created lazily the first time a phone number is referenced and never
    deleted. ``has_paid_fee`` gates withdrawals.
    """

    __tablename__ = "users"

    phone: Mapped[str] = mapped_column(String(12), primary_key=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    has_paid_fee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def __repr__(self) -> str:
        """String representation of User."""
        return (
            f"<User(phone={self.phone}, balance={self.balance}, "
            f"has_paid_fee={self.has_paid_fee})>"
        )


class Transaction(Base):
    """
    Ledger transaction records.

    ``reference`` is the caller-facing idempotency key. ``amount`` is fixed
    at creation; ``status`` is moved forward in place by the reconciler.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    user_phone: Mapped[str] = mapped_column(String(12), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=TransactionStatus.PENDING.value, index=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(f"type IN ({_in_clause(TransactionType)})", name="valid_type"),
        CheckConstraint(f"status IN ({_in_clause(TransactionStatus)})", name="valid_status"),
        Index("idx_transactions_phone_created", "user_phone", "created_at"),
        Index("idx_transactions_type_status", "type", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(reference={self.reference}, type={self.type}, "
            f"amount={self.amount}, status={self.status})>"
        )


class TransactionEvent(Base):
    """
    Transaction audit trail table.

    One row per creation or status change. Immutable once written.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return (
            f"<TransactionEvent(id={self.id}, reference={self.reference}, "
            f"type={self.event_type})>"
        )
