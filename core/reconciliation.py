"""
Settlement reconciliation for service fee payments.

Two drivers report the outcome of an STK push: the status poller and the
PayNecta webhook. Either may arrive first, both may arrive, and a webhook may
arrive after the poller gave up. The reconciler applies the outcome exactly
once:

1. Map the gateway status to an outcome
2. Compare-and-swap the transaction status inside one unit of work
3. Only the caller that won the swap applies the side effects
   (fee paid flag, loan credit, disbursement record)
"""
import asyncio
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from core.idempotency import ReferenceGenerator
from core.ledger import Direction, Ledger
from database.connection import session_scope
from database.models import TransactionStatus, TransactionType
from integrations.paynecta_client import GatewayStatus
from integrations.webhook_handler import WebhookDelivery, parse_webhook
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

LOAN_PREFIX = "LOAN"

SETTLEABLE_FROM = (
    TransactionStatus.PENDING,
    TransactionStatus.PROCESSING,
    TransactionStatus.TIMED_OUT,
)
FAILABLE_FROM = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)

SETTLED_NOTE = "Payment received. Your loan has been approved and will be released within 24 hours."
DISBURSEMENT_NOTE = "Loan approved. Funds will be released within 24 hours."
FAILED_NOTE = "Payment failed or was cancelled."


class Outcome(str, Enum):
    """What a gateway status means for a pending service fee."""

    SETTLE = "settle"
    FAIL = "fail"
    CANCEL = "cancel"
    IGNORE = "ignore"

    @property
    def terminal(self) -> bool:
        return self is not Outcome.IGNORE


@dataclass
class SettlementResult:
    """Result of applying one gateway report."""

    reference: str
    outcome: Outcome
    applied: bool


def map_gateway_status(status: Optional[str], result_code: Optional[int] = None) -> Outcome:
    """
    Map a PayNecta payment status to a settlement outcome.

    Args:
        status: Gateway status string (any case)
        result_code: M-Pesa result code when the gateway sent one

    Returns:
        Outcome: SETTLE, FAIL, CANCEL or IGNORE
    """
    status = (status or "").strip().lower()

    if status in ("completed", "processing"):
        return Outcome.SETTLE
    if status == "failed":
        return Outcome.FAIL
    if status == "cancelled":
        return Outcome.CANCEL
    if result_code == 0:
        return Outcome.SETTLE
    if result_code is not None:
        return Outcome.FAIL
    return Outcome.IGNORE


def _loan_amount(metadata: Optional[Dict[str, Any]], default: int) -> int:
    value = (metadata or {}).get("loan_amount")
    try:
        amount = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return amount if amount > 0 else default


class SettlementReconciler:
    """
    Applies gateway outcomes to service fee transactions.

    Drivers for the same reference are serialized in-process by a
    per-reference asyncio lock; the conditional status update is what
    guarantees exactly-once effects across processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Ledger,
        settings: Settings,
        poller: Optional[Any] = None,
    ):
        """
        Initialize reconciler.

        Args:
            session_factory: Session factory of the ledger database
            ledger: Ledger store
            settings: Application settings (default loan amount)
            poller: Optional SettlementPoller to stop once a payment is final
        """
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings
        self.poller = poller
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        logger.info("settlement_reconciler_initialized")

    def _lock_for(self, reference: str) -> asyncio.Lock:
        lock = self._locks.get(reference)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[reference] = lock
        return lock

    async def settle(
        self,
        reference: str,
        details: Optional[GatewayStatus] = None,
        source: str = "poll",
    ) -> bool:
        """
        Mark a service fee completed and grant the loan.

        Args:
            reference: Service fee reference
            details: Gateway status that reported the payment
            source: Driver name ('poll', 'webhook')

        Returns:
            bool: True if this call applied the settlement
        """
        metadata: Dict[str, Any] = {"settled_by": source}
        if details is not None:
            if details.mpesa_receipt_number:
                metadata["mpesa_receipt_number"] = details.mpesa_receipt_number
            if details.amount is not None:
                metadata["gateway_amount"] = details.amount
            metadata["gateway_status"] = details.status

        async with session_scope(self.session_factory) as db:
            won = await self.ledger.transition_status(
                db,
                reference,
                SETTLEABLE_FROM,
                TransactionStatus.COMPLETED,
                patch={"status_note": SETTLED_NOTE, "metadata": metadata},
                of_type=TransactionType.SERVICE_FEE,
            )
            if not won:
                return False

            tx = await self.ledger.get_transaction(db, reference)

            loan_amount = _loan_amount(tx.metadata_, self.settings.default_loan_amount)
            disbursement_reference = ReferenceGenerator.linked_reference(LOAN_PREFIX, reference)

            await self.ledger.mark_fee_paid(db, tx.user_phone)
            await self.ledger.adjust_balance(db, tx.user_phone, loan_amount, Direction.CREDIT)
            await self.ledger.create_transaction(
                db,
                reference=disbursement_reference,
                user_phone=tx.user_phone,
                type=TransactionType.LOAN_DISBURSEMENT,
                amount=loan_amount,
                status=TransactionStatus.PROCESSING,
                description=f"Loan disbursement for {reference}",
                status_note=DISBURSEMENT_NOTE,
                metadata={"settles": reference},
            )
            await self.ledger.update_transaction_status(
                db,
                reference,
                {"metadata": {"disbursement_reference": disbursement_reference}},
            )

        logger.info(
            "payment_settled",
            reference=reference,
            source=source,
            loan_amount=loan_amount,
            disbursement_reference=disbursement_reference,
        )
        return True

    async def fail(
        self,
        reference: str,
        status: TransactionStatus = TransactionStatus.FAILED,
        note: Optional[str] = None,
        source: str = "poll",
    ) -> bool:
        """
        Mark a pending service fee failed or cancelled.

        Returns:
            bool: True if this call applied the transition
        """
        async with session_scope(self.session_factory) as db:
            won = await self.ledger.transition_status(
                db,
                reference,
                FAILABLE_FROM,
                status,
                patch={"status_note": note or FAILED_NOTE, "metadata": {"failed_by": source}},
                of_type=TransactionType.SERVICE_FEE,
            )

        if won:
            logger.info("payment_failed", reference=reference, status=status.value, source=source)
        return won

    async def mark_timed_out(self, reference: str, attempts: Optional[int] = None) -> bool:
        """Give up on a payment the gateway never resolved. A late webhook can still settle it."""
        note = "Payment confirmation timed out."
        if attempts:
            note = f"Payment confirmation timed out after {attempts} status checks."

        async with self._lock_for(reference):
            async with session_scope(self.session_factory) as db:
                won = await self.ledger.transition_status(
                    db,
                    reference,
                    FAILABLE_FROM,
                    TransactionStatus.TIMED_OUT,
                    patch={"status_note": note},
                    of_type=TransactionType.SERVICE_FEE,
                )

        if won:
            metrics.record_settlement("poll", "timed_out")
            logger.warning("payment_timed_out", reference=reference, attempts=attempts)
        return won

    async def apply_gateway_status(
        self,
        reference: str,
        gateway_status: GatewayStatus,
        source: str = "poll",
    ) -> SettlementResult:
        """
        Map a gateway report and apply it.

        Args:
            reference: Service fee reference
            gateway_status: Status reported by PayNecta
            source: Driver name ('poll', 'webhook')

        Returns:
            SettlementResult: Outcome and whether this call applied it

        Raises:
            NotFound: If the reference is unknown
        """
        outcome = map_gateway_status(gateway_status.status, gateway_status.result_code)

        async with self._lock_for(reference):
            async with self.session_factory() as db:
                tx = await self.ledger.get_transaction(db, reference)
                tx_type = tx.type

            if tx_type != TransactionType.SERVICE_FEE.value:
                # Withdrawals and disbursements are resolved by our own workflow only
                logger.warning(
                    "gateway_status_for_non_fee_ignored",
                    reference=reference,
                    source=source,
                    type=tx_type,
                    gateway_status=gateway_status.status,
                )
                return SettlementResult(reference=reference, outcome=Outcome.IGNORE, applied=False)

            if outcome is Outcome.SETTLE:
                applied = await self.settle(reference, gateway_status, source)
            elif outcome is Outcome.FAIL:
                applied = await self.fail(
                    reference, TransactionStatus.FAILED, gateway_status.failure_reason, source
                )
            elif outcome is Outcome.CANCEL:
                applied = await self.fail(
                    reference, TransactionStatus.CANCELLED, gateway_status.failure_reason, source
                )
            else:
                applied = False

        if applied:
            metrics.record_settlement(source, outcome.value)
        if outcome.terminal and self.poller is not None:
            self.poller.cancel(reference)

        logger.info(
            "gateway_status_applied",
            reference=reference,
            source=source,
            gateway_status=gateway_status.status,
            outcome=outcome.value,
            applied=applied,
        )
        return SettlementResult(reference=reference, outcome=outcome, applied=applied)

    async def resolve_reference(self, candidate: str) -> Optional[str]:
        """Resolve a webhook reference as one of ours, else as a gateway reference."""
        async with self.session_factory() as db:
            tx = await self.ledger.find_transaction(db, candidate)
            if tx is None:
                tx = await self.ledger.find_by_gateway_reference(db, candidate)
        return tx.reference if tx is not None else None

    async def apply_webhook(self, delivery: WebhookDelivery) -> Optional[SettlementResult]:
        """
        Apply a parsed webhook delivery.

        Returns:
            Optional[SettlementResult]: None if the reference is unknown
        """
        if not delivery.reference:
            return None

        reference = await self.resolve_reference(delivery.reference)
        if reference is None:
            logger.warning("webhook_unknown_reference", reference=delivery.reference)
            return None

        return await self.apply_gateway_status(reference, delivery.status, source="webhook")

    async def handle_webhook(self, payload: Dict[str, Any]) -> Optional[SettlementResult]:
        """
        Parse and apply a raw webhook body.

        Raises:
            WebhookError: If the body is not a JSON object
        """
        return await self.apply_webhook(parse_webhook(payload))
