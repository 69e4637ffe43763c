"""
Ledger store: user balances and the transaction log.

All operations take an explicit database session and flush without
committing; the caller owns the unit of work. Uniqueness of the phone
number and of the transaction reference is enforced by the database, not by
application locks.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import BusinessRuleViolation, DuplicateReference, NotFound
from database.models import (
    Transaction,
    TransactionEvent,
    TransactionStatus,
    TransactionType,
    User,
    utcnow,
)

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_PATCHABLE_FIELDS = ("status", "status_note", "gateway_reference", "description")


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


def _insert_for(db: AsyncSession) -> Any:
    """Return the dialect insert construct that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        return None
    return insert


class Ledger:
    """Durable record of users and their transactions."""

    async def get_user(self, db: AsyncSession, phone: str) -> Optional[User]:
        stmt = select(User).where(User.phone == phone).execution_options(populate_existing=True)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create_user(self, db: AsyncSession, phone: str) -> User:
        """
        Return the user for a phone number, creating it on first reference.

        Concurrent calls for the same phone are resolved by the primary key:
        the insert is a no-op when the row already exists.

        Args:
            db: Database session
            phone: Canonical phone number

        Returns:
            User: Existing or newly created user
        """
        insert = _insert_for(db)
        now = utcnow()

        if insert is not None:
            stmt = (
                insert(User)
                .values(phone=phone, balance=0, has_paid_fee=False, created_at=now, updated_at=now)
                .on_conflict_do_nothing(index_elements=[User.phone])
            )
            result = await db.execute(stmt)
            if result.rowcount:
                logger.info("user_created", phone=phone)
        elif await self.get_user(db, phone) is None:
            db.add(User(phone=phone, balance=0, has_paid_fee=False, created_at=now, updated_at=now))
            await db.flush()
            logger.info("user_created", phone=phone)

        user = await self.get_user(db, phone)
        if user is None:  # pragma: no cover - the row was inserted above
            raise NotFound(f"User {phone} not found")
        return user

    async def adjust_balance(
        self, db: AsyncSession, phone: str, amount: int, direction: Direction
    ) -> User:
        """
        Apply a signed delta to a user's balance.

        Does not clamp at zero and does not check sufficiency; callers that
        need a guarded debit use debit_for_withdrawal.

        Args:
            db: Database session
            phone: Canonical phone number
            amount: Non-negative amount in shillings
            direction: Credit or debit

        Returns:
            User: Updated user snapshot
        """
        await self.get_or_create_user(db, phone)
        delta = amount if Direction(direction) == Direction.CREDIT else -amount

        stmt = (
            update(User)
            .where(User.phone == phone)
            .values(balance=User.balance + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

        user = await self.get_user(db, phone)
        logger.info(
            "balance_adjusted",
            phone=phone,
            direction=Direction(direction).value,
            amount=amount,
            balance=user.balance,
        )
        return user

    async def mark_fee_paid(self, db: AsyncSession, phone: str) -> User:
        """Set the fee-paid flag. Calling it again is a no-op."""
        await self.get_or_create_user(db, phone)
        stmt = (
            update(User)
            .where(User.phone == phone, User.has_paid_fee.is_(False))
            .values(has_paid_fee=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount:
            logger.info("fee_marked_paid", phone=phone)
        return await self.get_user(db, phone)

    async def debit_for_withdrawal(self, db: AsyncSession, phone: str, amount: int) -> User:
        """
        Debit a balance only if the fee is paid and the balance covers it.

        The check and the debit are a single conditional UPDATE, so two
        concurrent withdrawals cannot both pass the sufficiency check.

        Raises:
            BusinessRuleViolation: If the fee is unpaid or the balance is too low
        """
        await self.get_or_create_user(db, phone)
        stmt = (
            update(User)
            .where(
                User.phone == phone,
                User.has_paid_fee.is_(True),
                User.balance >= amount,
            )
            .values(balance=User.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        user = await self.get_user(db, phone)

        if not result.rowcount:
            if not user.has_paid_fee:
                raise BusinessRuleViolation("Service fee has not been paid")
            raise BusinessRuleViolation(
                f"Insufficient balance. Available: KSH {user.balance}"
            )

        logger.info("withdrawal_debited", phone=phone, amount=amount, balance=user.balance)
        return user

    async def _record_event(
        self,
        db: AsyncSession,
        reference: str,
        event_type: str,
        event_data: Dict[str, Any],
    ) -> None:
        db.add(
            TransactionEvent(
                reference=reference,
                event_type=event_type,
                event_data=event_data,
                created_at=utcnow(),
            )
        )

    async def create_transaction(
        self,
        db: AsyncSession,
        *,
        reference: str,
        user_phone: str,
        type: TransactionType,
        amount: int,
        status: TransactionStatus = TransactionStatus.PENDING,
        description: Optional[str] = None,
        status_note: Optional[str] = None,
        gateway_reference: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """
        Record a new transaction.

        Raises:
            DuplicateReference: If the reference already exists
        """
        existing = await db.execute(
            select(Transaction.id).where(Transaction.reference == reference)
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateReference(f"Reference {reference} already exists", reference)

        now = utcnow()
        tx = Transaction(
            reference=reference,
            user_phone=user_phone,
            type=TransactionType(type).value,
            amount=amount,
            status=TransactionStatus(status).value,
            description=description,
            status_note=status_note,
            gateway_reference=gateway_reference,
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        db.add(tx)
        try:
            await db.flush()
        except IntegrityError as e:
            raise DuplicateReference(f"Reference {reference} already exists", reference) from e

        await self._record_event(
            db,
            reference,
            "transaction.created",
            {"type": tx.type, "amount": amount, "status": tx.status},
        )

        logger.info(
            "transaction_created",
            reference=reference,
            type=tx.type,
            amount=amount,
            status=tx.status,
        )
        return tx

    async def find_transaction(self, db: AsyncSession, reference: str) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.reference == reference)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transaction(self, db: AsyncSession, reference: str) -> Transaction:
        tx = await self.find_transaction(db, reference)
        if tx is None:
            raise NotFound(f"Transaction {reference} not found", reference)
        return tx

    async def find_by_gateway_reference(
        self, db: AsyncSession, gateway_reference: str
    ) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.gateway_reference == gateway_reference)
            .order_by(Transaction.id.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    def _apply_patch(self, tx: Transaction, patch: Dict[str, Any]) -> None:
        for field in _PATCHABLE_FIELDS:
            if field in patch:
                value = patch[field]
                if field == "status":
                    value = TransactionStatus(value).value
                setattr(tx, field, value)
        if patch.get("metadata"):
            tx.metadata_ = {**(tx.metadata_ or {}), **patch["metadata"]}
        tx.updated_at = utcnow()

    async def update_transaction_status(
        self, db: AsyncSession, reference: str, patch: Dict[str, Any]
    ) -> Transaction:
        """
        Partially update a transaction.

        ``patch`` may carry status, status_note, gateway_reference,
        description and a metadata dict that is merged into the existing one.

        Raises:
            NotFound: If the reference is unknown
        """
        tx = await self.get_transaction(db, reference)
        previous_status = tx.status
        self._apply_patch(tx, patch)
        await db.flush()

        if tx.status != previous_status:
            await self._record_event(
                db,
                reference,
                f"transaction.{tx.status}",
                {"from": previous_status, "to": tx.status, "note": tx.status_note},
            )
            logger.info(
                "transaction_status_updated",
                reference=reference,
                from_status=previous_status,
                to_status=tx.status,
            )
        return tx

    async def transition_status(
        self,
        db: AsyncSession,
        reference: str,
        from_statuses: Iterable[TransactionStatus],
        to_status: TransactionStatus,
        patch: Optional[Dict[str, Any]] = None,
        of_type: Optional[TransactionType] = None,
    ) -> bool:
        """
        Compare-and-swap a transaction's status.

        The status only moves if it is currently one of ``from_statuses``
        (and, when ``of_type`` is given, the transaction has that type).
        Exactly one of several racing callers gets True back, and only that
        caller may apply the side effects of the transition.

        Returns:
            bool: True if this call performed the transition
        """
        allowed = [TransactionStatus(s).value for s in from_statuses]
        target = TransactionStatus(to_status).value

        conditions = [Transaction.reference == reference, Transaction.status.in_(allowed)]
        if of_type is not None:
            conditions.append(Transaction.type == TransactionType(of_type).value)

        stmt = (
            update(Transaction)
            .where(*conditions)
            .values(status=target, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

        if not result.rowcount:
            logger.info(
                "transaction_transition_skipped",
                reference=reference,
                to_status=target,
                allowed_from=allowed,
            )
            return False

        tx = await self.get_transaction(db, reference)
        if patch:
            self._apply_patch(tx, {k: v for k, v in patch.items() if k != "status"})
            await db.flush()

        await self._record_event(
            db,
            reference,
            f"transaction.{target}",
            {"to": target, "note": tx.status_note},
        )
        logger.info("transaction_transitioned", reference=reference, to_status=target)
        return True

    async def list_transactions(
        self, db: AsyncSession, phone: str, limit: int = DEFAULT_PAGE_SIZE
    ) -> List[Transaction]:
        """Return a user's transactions, most recent first."""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        stmt = (
            select(Transaction)
            .where(Transaction.user_phone == phone)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_settlements(self, db: AsyncSession) -> List[Transaction]:
        """Service fee payments that were sent to the gateway but never settled."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.type == TransactionType.SERVICE_FEE.value,
                Transaction.status.in_(
                    [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value]
                ),
                Transaction.gateway_reference.isnot(None),
            )
            .order_by(Transaction.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_due_disbursements(
        self, db: AsyncSession, cutoff: datetime
    ) -> List[Transaction]:
        """Loan disbursements still processing that were created before ``cutoff``."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.type == TransactionType.LOAN_DISBURSEMENT.value,
                Transaction.status == TransactionStatus.PROCESSING.value,
                Transaction.created_at <= cutoff,
            )
            .order_by(Transaction.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())
