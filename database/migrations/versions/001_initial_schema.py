"""Initial ledger schema

Revision ID: 001
Revises:
Create Date: 2025-01-06 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TRANSACTION_TYPES = "'service_fee', 'withdrawal', 'loan_disbursement'"
TRANSACTION_STATUSES = (
    "'pending', 'processing', 'completed', 'failed', 'cancelled', 'error', 'timed_out'"
)


def upgrade() -> None:
    """Upgrade database schema."""
    # Create users table
    op.create_table(
        "users",
        sa.Column("phone", sa.String(length=12), nullable=False),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("has_paid_fee", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("phone"),
    )

    # Create transactions table
    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("user_phone", sa.String(length=12), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status_note", sa.Text(), nullable=True),
        sa.Column("gateway_reference", sa.String(length=128), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="non_negative_amount"),
        sa.CheckConstraint(f"type IN ({TRANSACTION_TYPES})", name="valid_type"),
        sa.CheckConstraint(f"status IN ({TRANSACTION_STATUSES})", name="valid_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_transactions_reference"), "transactions", ["reference"], unique=True
    )
    op.create_index(
        op.f("ix_transactions_user_phone"), "transactions", ["user_phone"], unique=False
    )
    op.create_index(op.f("ix_transactions_status"), "transactions", ["status"], unique=False)
    op.create_index(
        op.f("ix_transactions_gateway_reference"),
        "transactions",
        ["gateway_reference"],
        unique=False,
    )
    op.create_index(
        op.f("ix_transactions_created_at"), "transactions", ["created_at"], unique=False
    )
    op.create_index(
        "idx_transactions_phone_created",
        "transactions",
        ["user_phone", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_transactions_type_status", "transactions", ["type", "status"], unique=False
    )

    # Create transaction_events table
    op.create_table(
        "transaction_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_transaction_events_reference"),
        "transaction_events",
        ["reference"],
        unique=False,
    )
    op.create_index(
        op.f("ix_transaction_events_created_at"),
        "transaction_events",
        ["created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_transaction_events_created_at"), table_name="transaction_events")
    op.drop_index(op.f("ix_transaction_events_reference"), table_name="transaction_events")
    op.drop_table("transaction_events")

    op.drop_index("idx_transactions_type_status", table_name="transactions")
    op.drop_index("idx_transactions_phone_created", table_name="transactions")
    op.drop_index(op.f("ix_transactions_created_at"), table_name="transactions")
    op.drop_index(op.f("ix_transactions_gateway_reference"), table_name="transactions")
    op.drop_index(op.f("ix_transactions_status"), table_name="transactions")
    op.drop_index(op.f("ix_transactions_user_phone"), table_name="transactions")
    op.drop_index(op.f("ix_transactions_reference"), table_name="transactions")
    op.drop_table("transactions")

    op.drop_table("users")
