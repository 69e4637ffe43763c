"""
Payment flows: service fee STK push and withdrawals.

Service fee flow:
1. Validate phone and amount
2. Generate the reference and record a pending transaction
3. Ask PayNecta to send the STK push
4. Store the gateway reference and arm the settlement poller

Withdrawal flow (hold then commit):
1. Validate phone and amount
2. Debit the balance and record a processing withdrawal in one unit of work
3. An operator later completes it, or fails it and the hold is re-credited
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from core.exceptions import (
    BusinessRuleViolation,
    DuplicateReference,
    InternalError,
    InvalidInput,
    NotFound,
    SwiftLoanError,
    UpstreamFailure,
)
from core.idempotency import ReferenceGenerator
from core.ledger import Direction, Ledger
from core.phone import normalize_phone
from core.receipts import receipt_view
from database.connection import session_scope
from database.models import Transaction, TransactionStatus, TransactionType
from integrations.paynecta_client import GatewayError, PayNectaClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WITHDRAWAL_PREFIX = "WD"
MAX_REFERENCE_ATTEMPTS = 3

SYSTEM_ERROR_NOTE = "System error occurred. Please try again later."
STK_FAILED_NOTE = "STK push failed to send. Try again later."


def parse_amount(value: Any, field: str = "amount") -> int:
    """
    Coerce a request amount to whole shillings (half up).

    Raises:
        InvalidInput: If the value is missing or not a number
    """
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        raise InvalidInput(f"{field.replace('_', ' ').capitalize()} is required")
    try:
        amount = Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidInput(f"Invalid {field.replace('_', ' ')}")
    if not amount.is_finite():
        raise InvalidInput(f"Invalid {field.replace('_', ' ')}")
    return int(amount)


class PaymentProcessor:
    """
    Orchestrates payments against the ledger and the gateway.

    Each step that must survive a later failure is committed in its own unit
    of work, so the reference of a failed payment stays queryable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Ledger,
        gateway: PayNectaClient,
        settings: Settings,
        poller: Optional[Any] = None,
        references: Optional[ReferenceGenerator] = None,
    ):
        """
        Initialize payment processor.

        Args:
            session_factory: Session factory of the ledger database
            ledger: Ledger store
            gateway: PayNecta client
            settings: Application settings
            poller: Optional SettlementPoller armed after each STK push
            references: Optional reference generator
        """
        self.session_factory = session_factory
        self.ledger = ledger
        self.gateway = gateway
        self.settings = settings
        self.poller = poller
        self.references = references or ReferenceGenerator()
        logger.info("payment_processor_initialized")

    async def _record_pending_fee(
        self, phone: str, amount: int, loan_amount: Optional[int]
    ) -> Transaction:
        metadata: Dict[str, Any] = {}
        if loan_amount is not None:
            metadata["loan_amount"] = loan_amount

        for attempt in range(1, MAX_REFERENCE_ATTEMPTS + 1):
            reference = self.references.next(self.settings.reference_prefix)
            try:
                async with session_scope(self.session_factory) as db:
                    await self.ledger.get_or_create_user(db, phone)
                    return await self.ledger.create_transaction(
                        db,
                        reference=reference,
                        user_phone=phone,
                        type=TransactionType.SERVICE_FEE,
                        amount=amount,
                        description=f"Loan service fee from {phone}",
                        status_note="Waiting for STK push to be sent.",
                        metadata=metadata,
                    )
            except DuplicateReference:
                logger.warning("reference_collision", reference=reference, attempt=attempt)
            except SwiftLoanError:
                raise
            except Exception as e:
                logger.error("payment_record_failed", reference=reference, error=str(e))
                raise InternalError("Could not record payment", reference) from e

        raise InternalError("Could not allocate a payment reference")

    async def _mark(
        self,
        reference: str,
        status: TransactionStatus,
        note: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with session_scope(self.session_factory) as db:
                await self.ledger.update_transaction_status(
                    db,
                    reference,
                    {"status": status, "status_note": note, "metadata": metadata or {}},
                )
        except Exception as e:
            logger.error(
                "payment_status_update_failed",
                reference=reference,
                status=status.value,
                error=str(e),
            )

    async def initiate_payment(
        self,
        phone: Any,
        amount: Any,
        loan_amount: Any = None,
    ) -> Dict[str, Any]:
        """
        Charge the loan service fee by STK push.

        Args:
            phone: Customer phone in any accepted shape
            amount: Service fee in shillings (>= 1)
            loan_amount: Loan to grant on settlement (defaults to the configured amount)

        Returns:
            Dict[str, Any]: success, message, reference and the receipt

        Raises:
            InvalidInput: If phone or amounts are invalid
            UpstreamFailure: If the gateway refused or failed (carries the reference)
            InternalError: If the payment could not be recorded
        """
        phone = normalize_phone(phone)
        amount = parse_amount(amount)
        if amount < 1:
            raise InvalidInput("Amount must be at least KSH 1")

        requested_loan = None
        if loan_amount is not None and str(loan_amount).strip() != "":
            requested_loan = parse_amount(loan_amount, "loan_amount")
            if requested_loan < 1:
                raise InvalidInput("Loan amount must be positive")

        tx = await self._record_pending_fee(phone, amount, requested_loan)
        reference = tx.reference

        logger.info("payment_initiated", reference=reference, phone=phone, amount=amount)

        try:
            result = await self.gateway.initiate(phone, amount)
        except GatewayError as e:
            await self._mark(
                reference,
                TransactionStatus.ERROR,
                SYSTEM_ERROR_NOTE,
                {"error": e.message, "error_type": e.error_type.value},
            )
            metrics.record_payment_initiation("error", amount)
            e.reference = reference
            raise
        except Exception as e:
            logger.error("stk_push_unexpected_error", reference=reference, error=str(e))
            await self._mark(reference, TransactionStatus.ERROR, SYSTEM_ERROR_NOTE, {"error": str(e)})
            metrics.record_payment_initiation("error", amount)
            raise InternalError("Server error", reference) from e

        if not result.success:
            message = result.message or STK_FAILED_NOTE
            await self._mark(reference, TransactionStatus.FAILED, message)
            metrics.record_payment_initiation("failed", amount)
            logger.warning("stk_push_refused", reference=reference, message=message)
            raise UpstreamFailure(message, reference)

        try:
            async with session_scope(self.session_factory) as db:
                tx = await self.ledger.update_transaction_status(
                    db,
                    reference,
                    {
                        "gateway_reference": result.transaction_reference,
                        "status_note": (
                            f"STK push sent to {phone}. Enter your M-Pesa PIN to complete."
                        ),
                    },
                )
        except Exception as e:
            logger.error("payment_update_failed", reference=reference, error=str(e))
            raise InternalError("Server error", reference) from e

        if self.poller is not None and result.transaction_reference:
            self.poller.arm(reference, result.transaction_reference)

        metrics.record_payment_initiation("pending", amount)
        return {
            "success": True,
            "message": "STK push sent, check your phone",
            "reference": reference,
            "receipt": receipt_view(tx),
        }

    async def request_withdrawal(self, phone: Any, amount: Any) -> Dict[str, Any]:
        """
        Hold funds for a withdrawal to M-Pesa.

        Raises:
            InvalidInput: If phone or amount are invalid
            BusinessRuleViolation: Below minimum, fee unpaid, or insufficient balance
        """
        phone = normalize_phone(phone)
        amount = parse_amount(amount)
        minimum = self.settings.minimum_withdrawal
        if amount < minimum:
            metrics.record_withdrawal("rejected")
            raise BusinessRuleViolation(f"Minimum withdrawal is KSH {minimum}")

        reference = self.references.next(WITHDRAWAL_PREFIX)
        try:
            async with session_scope(self.session_factory) as db:
                user = await self.ledger.debit_for_withdrawal(db, phone, amount)
                tx = await self.ledger.create_transaction(
                    db,
                    reference=reference,
                    user_phone=phone,
                    type=TransactionType.WITHDRAWAL,
                    amount=amount,
                    status=TransactionStatus.PROCESSING,
                    description=f"Withdrawal to M-Pesa {phone}",
                    status_note="Withdrawal is being processed.",
                )
                balance = user.balance
        except BusinessRuleViolation:
            metrics.record_withdrawal("rejected")
            raise

        metrics.record_withdrawal("accepted")
        logger.info("withdrawal_requested", reference=reference, phone=phone, amount=amount)
        return {
            "success": True,
            "message": "Withdrawal request received",
            "reference": reference,
            "balance": balance,
            "receipt": receipt_view(tx),
        }

    async def _resolve_withdrawal(
        self,
        reference: str,
        to_status: TransactionStatus,
        note: str,
    ) -> Transaction:
        async with session_scope(self.session_factory) as db:
            tx = await self.ledger.get_transaction(db, reference)
            if tx.type != TransactionType.WITHDRAWAL.value:
                raise InvalidInput(f"{reference} is not a withdrawal", reference)

            won = await self.ledger.transition_status(
                db,
                reference,
                [TransactionStatus.PROCESSING],
                to_status,
                patch={"status_note": note},
            )
            if not won:
                raise BusinessRuleViolation(
                    f"Withdrawal {reference} is already {tx.status}", reference
                )

            if to_status is TransactionStatus.FAILED:
                await self.ledger.adjust_balance(db, tx.user_phone, tx.amount, Direction.CREDIT)

            tx = await self.ledger.get_transaction(db, reference)

        metrics.record_withdrawal(to_status.value)
        logger.info("withdrawal_resolved", reference=reference, status=to_status.value)
        return tx

    async def complete_withdrawal(self, reference: str) -> Transaction:
        """Commit a held withdrawal once the payout went through."""
        return await self._resolve_withdrawal(
            reference, TransactionStatus.COMPLETED, "Withdrawal sent to your M-Pesa."
        )

    async def fail_withdrawal(self, reference: str, reason: Optional[str] = None) -> Transaction:
        """Fail a held withdrawal and return the held amount to the balance."""
        return await self._resolve_withdrawal(
            reference,
            TransactionStatus.FAILED,
            reason or "Withdrawal failed. The amount has been returned to your balance.",
        )

    async def get_receipt(self, reference: str) -> Transaction:
        """
        Raises:
            NotFound: With the message 'Receipt not found'
        """
        async with self.session_factory() as db:
            tx = await self.ledger.find_transaction(db, reference)
        if tx is None:
            raise NotFound("Receipt not found")
        return tx
