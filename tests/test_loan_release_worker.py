"""
Unit tests for the loan release worker.
"""
from datetime import timedelta
from typing import Any

import pytest

from database.models import TransactionStatus, utcnow
from workers.loan_release_worker import RELEASED_NOTE, LoanReleaseWorker


class TestLoanReleaseWorker:
    """Test suite for LoanReleaseWorker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_releases_only_after_hold(
        self,
        reconciler: Any,
        ledger: Any,
        session_factory: Any,
        test_settings: Any,
        pending_fee: Any,
    ) -> None:
        reference = await pending_fee(reference="ORDER-1700000000000")
        await reconciler.settle(reference, None, "poll")
        worker = LoanReleaseWorker(session_factory, ledger, test_settings)

        assert await worker.release_due_loans() == []
        released = await worker.release_due_loans(utcnow() + timedelta(hours=25))

        assert released == ["LOAN-1700000000000"]
        async with session_factory() as db:
            loan = await ledger.get_transaction(db, "LOAN-1700000000000")
        assert loan.status == TransactionStatus.COMPLETED.value
        assert loan.status_note == RELEASED_NOTE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_is_idempotent(
        self,
        reconciler: Any,
        ledger: Any,
        session_factory: Any,
        test_settings: Any,
        pending_fee: Any,
    ) -> None:
        reference = await pending_fee()
        await reconciler.settle(reference, None, "poll")
        worker = LoanReleaseWorker(session_factory, ledger, test_settings)
        later = utcnow() + timedelta(days=2)

        assert len(await worker.release_due_loans(later)) == 1
        assert await worker.release_due_loans(later) == []
