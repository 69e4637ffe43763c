"""
Race condition tests for concurrent settlement drivers and withdrawals.

The poller and the webhook may report the same payment at the same time;
exactly one of them must apply the loan credit.
"""
import asyncio
from typing import Any

import pytest
from sqlalchemy import func, select

from core.exceptions import BusinessRuleViolation
from database.models import Transaction, TransactionStatus, TransactionType
from integrations.paynecta_client import GatewayStatus

PHONE = "254712345678"


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_poll_and_webhook_settle_exactly_once(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        """
        Poll 'completed' and webhook 'completed' for one reference.

        Should credit once and create one loan disbursement.
        """
        reference = await pending_fee(loan_amount=30000)

        results = await asyncio.gather(
            reconciler.apply_gateway_status(reference, GatewayStatus(status="completed"), "poll"),
            reconciler.handle_webhook(
                {"external_reference": reference, "data": {"status": "completed"}}
            ),
        )

        assert sorted(r.applied for r in results) == [False, True]
        async with session_factory() as db:
            user = await ledger.get_user(db, PHONE)
            loans = await db.execute(
                select(func.count()).select_from(Transaction).where(
                    Transaction.type == TransactionType.LOAN_DISBURSEMENT.value
                )
            )
        assert user.balance == 30000
        assert loans.scalar_one() == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_many_duplicate_webhooks(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        """Ten deliveries of the same 'completed' webhook credit once."""
        reference = await pending_fee()
        payload = {"external_reference": reference, "status": "completed"}

        results = await asyncio.gather(*[reconciler.handle_webhook(payload) for _ in range(10)])

        assert sum(1 for r in results if r.applied) == 1
        async with session_factory() as db:
            assert (await ledger.get_user(db, PHONE)).balance == 50000

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_settle_and_fail_race(
        self, reconciler: Any, ledger: Any, session_factory: Any, pending_fee: Any
    ) -> None:
        """Conflicting reports: whichever applies first wins, the other is a no-op."""
        reference = await pending_fee()

        results = await asyncio.gather(
            reconciler.apply_gateway_status(reference, GatewayStatus(status="completed"), "poll"),
            reconciler.apply_gateway_status(reference, GatewayStatus(status="failed"), "webhook"),
        )

        assert sum(1 for r in results if r.applied) == 1
        async with session_factory() as db:
            tx = await ledger.get_transaction(db, reference)
            user = await ledger.get_user(db, PHONE)
        if tx.status == TransactionStatus.COMPLETED.value:
            assert user.balance == 50000
        else:
            assert tx.status == TransactionStatus.FAILED.value
            assert user.balance == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_cannot_overdraw(
        self, processor: Any, funded_user: Any, ledger: Any, session_factory: Any
    ) -> None:
        """Three withdrawals of 400 against a balance of 1000: at most two succeed."""
        await funded_user(1000)

        results = await asyncio.gather(
            *[processor.request_withdrawal(PHONE, 400) for _ in range(3)],
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, BusinessRuleViolation)]
        assert len(accepted) == 2
        assert len(rejected) == 1
        async with session_factory() as db:
            assert (await ledger.get_user(db, PHONE)).balance == 200
