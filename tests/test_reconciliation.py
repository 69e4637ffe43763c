"""
Unit tests for settlement reconciliation.
"""
from typing import Any

import pytest
from sqlalchemy import select

from core.exceptions import NotFound
from core.reconciliation import Outcome, map_gateway_status
from database.models import Transaction, TransactionStatus, TransactionType
from integrations.paynecta_client import GatewayStatus
from integrations.webhook_handler import WebhookError

PHONE = "254712345678"


async def _disbursements(session_factory: Any) -> list:
    async with session_factory() as db:
        result = await db.execute(
            select(Transaction).where(
                Transaction.type == TransactionType.LOAN_DISBURSEMENT.value
            )
        )
        return list(result.scalars().all())


class TestMapGatewayStatus:
    """Gateway status to outcome mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status,result_code,expected",
        [
            ("completed", None, Outcome.SETTLE),
            ("COMPLETED", None, Outcome.SETTLE),
            ("processing", None, Outcome.SETTLE),
            ("failed", None, Outcome.FAIL),
            ("cancelled", None, Outcome.CANCEL),
            ("", 0, Outcome.SETTLE),
            ("", 1032, Outcome.FAIL),
            ("queued", None, Outcome.IGNORE),
            ("pending", None, Outcome.IGNORE),
            (None, None, Outcome.IGNORE),
        ],
    )
    def test_mapping(self, status: Any, result_code: Any, expected: Outcome) -> None:
        assert map_gateway_status(status, result_code) is expected


class TestSettlementReconciler:
    """Test suite for SettlementReconciler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settle_credits_loan_and_records_disbursement(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee(reference="ORDER-1700000000000", loan_amount=20000)

        result = await reconciler.apply_gateway_status(
            reference, GatewayStatus(status="completed", mpesa_receipt_number="QKX1"), "poll"
        )

        assert result.outcome is Outcome.SETTLE
        assert result.applied is True
        async with session_factory() as db:
            user = await ledger.get_user(db, PHONE)
            fee = await ledger.get_transaction(db, reference)
            loan = await ledger.get_transaction(db, "LOAN-1700000000000")

        assert user.balance == 20000
        assert user.has_paid_fee is True
        assert fee.status == TransactionStatus.COMPLETED.value
        assert fee.metadata_["mpesa_receipt_number"] == "QKX1"
        assert fee.metadata_["disbursement_reference"] == "LOAN-1700000000000"
        assert loan.status == TransactionStatus.PROCESSING.value
        assert loan.amount == 20000
        assert loan.metadata_ == {"settles": reference}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_settle_uses_default_loan_amount(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()

        await reconciler.settle(reference, None, "poll")

        async with session_factory() as db:
            assert (await ledger.get_user(db, PHONE)).balance == 50000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_settlement_has_no_effect(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()

        assert await reconciler.settle(reference, None, "poll") is True
        assert await reconciler.settle(reference, None, "webhook") is False

        async with session_factory() as db:
            assert (await ledger.get_user(db, PHONE)).balance == 50000
        assert len(await _disbursements(session_factory)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_has_no_balance_effect(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()

        result = await reconciler.apply_gateway_status(
            reference, GatewayStatus(status="failed", failure_reason="Insufficient funds"), "poll"
        )

        assert result.applied is True
        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
            user = await ledger.get_user(db, PHONE)
        assert tx.status == TransactionStatus.FAILED.value
        assert tx.status_note == "Insufficient funds"
        assert user.balance == 0
        assert user.has_paid_fee is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled(self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any) -> None:
        reference = await pending_fee()

        await reconciler.apply_gateway_status(reference, GatewayStatus(status="cancelled"), "webhook")

        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
        assert tx.status == TransactionStatus.CANCELLED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_leaves_pending(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()

        result = await reconciler.apply_gateway_status(reference, GatewayStatus(status="queued"), "poll")

        assert result.outcome is Outcome.IGNORE
        assert result.applied is False
        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
        assert tx.status == TransactionStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference_raises(self, reconciler: Any) -> None:
        with pytest.raises(NotFound):
            await reconciler.apply_gateway_status("ORDER-404", GatewayStatus(status="queued"), "poll")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fail_does_not_override_completed(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()
        await reconciler.settle(reference, None, "poll")

        assert await reconciler.fail(reference, source="webhook") is False

        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
        assert tx.status == TransactionStatus.COMPLETED.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_late_webhook_settles_timed_out_payment(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee()
        assert await reconciler.mark_timed_out(reference, 40) is True

        result = await reconciler.handle_webhook(
            {"external_reference": reference, "data": {"status": "completed"}}
        )

        assert result.applied is True
        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
            user = await ledger.get_user(db, PHONE)
        assert tx.status == TransactionStatus.COMPLETED.value
        assert user.balance == 50000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_resolves_gateway_reference(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee(reference="ORDER-5", gateway_reference="PNT-TX-5")

        result = await reconciler.handle_webhook(
            {"transaction_reference": "PNT-TX-5", "status": "completed", "result_code": 0}
        )

        assert result.reference == reference
        assert result.applied is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_with_nested_reference(
        self, reconciler: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee(reference="ORDER-6", gateway_reference="PNT-TX-6")

        result = await reconciler.handle_webhook(
            {"data": {"transaction_reference": "PNT-TX-6", "status": "failed"}}
        )

        assert result.reference == reference
        assert result.outcome is Outcome.FAIL

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_unknown_reference_ignored(self, reconciler: Any) -> None:
        assert await reconciler.handle_webhook({"reference": "ORDER-404", "status": "completed"}) is None
        assert await reconciler.handle_webhook({"status": "completed"}) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_webhook_rejects_non_object(self, reconciler: Any) -> None:
        with pytest.raises(WebhookError):
            await reconciler.handle_webhook(["not", "an", "object"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_webhook_stops_polling(
        self, reconciler: Any, poller: Any, pending_fee: Any, mocker: Any
    ) -> None:
        reference = await pending_fee()
        cancel = mocker.spy(poller, "cancel")

        await reconciler.handle_webhook({"external_reference": reference, "status": "completed"})

        cancel.assert_called_once_with(reference)


class TestNonFeeTransactions:
    """Gateway reports never touch withdrawals or disbursements."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_webhook_for_withdrawal_is_ignored(
        self,
        reconciler: Any,
        processor: Any,
        funded_user: Any,
        ledger: Any,
        session_factory: Any,
    ) -> None:
        await funded_user(1000)
        reference = (await processor.request_withdrawal(PHONE, 400))["reference"]

        result = await reconciler.handle_webhook({"reference": reference, "status": "failed"})

        assert result.outcome is Outcome.IGNORE
        assert result.applied is False
        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
        assert tx.status == TransactionStatus.PROCESSING.value

        await processor.fail_withdrawal(reference)
        async with session_factory() as db:
            assert (await ledger.get_user(db, PHONE)).balance == 1000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_completed_webhook_for_disbursement_is_ignored(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        reference = await pending_fee(reference="ORDER-1700000000000")
        await reconciler.settle(reference, None, "poll")

        result = await reconciler.handle_webhook(
            {"external_reference": "LOAN-1700000000000", "status": "completed"}
        )

        assert result.outcome is Outcome.IGNORE
        async with session_factory() as db:
            loan = await ledger.get_transaction(db, "LOAN-1700000000000")
            user = await ledger.get_user(db, PHONE)
        assert loan.status == TransactionStatus.PROCESSING.value
        assert user.balance == 50000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_direct_transitions_require_service_fee(
        self, reconciler: Any, processor: Any, funded_user: Any
    ) -> None:
        await funded_user(1000)
        reference = (await processor.request_withdrawal(PHONE, 400))["reference"]

        assert await reconciler.settle(reference, None, "webhook") is False
        assert await reconciler.fail(reference, source="webhook") is False
        assert await reconciler.mark_timed_out(reference) is False
