"""
Loan release background worker.

Loans granted on fee settlement are held for a day before release. Every few
minutes the worker marks disbursements older than the hold as completed.
Runs inside the API lifespan, or standalone:

    python -m workers.loan_release_worker
"""
import asyncio
import signal
from datetime import datetime, timedelta
from typing import Any, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.ledger import Ledger
from database.connection import close_db, create_engine, create_session_factory, session_scope
from database.models import TransactionStatus, utcnow
from monitoring.logging import setup_logging
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RELEASED_NOTE = "Loan has been released to your account."


class LoanReleaseWorker:
    """Releases held loan disbursements once the hold period has passed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Ledger,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings

    async def release_due_loans(self, now: Optional[datetime] = None) -> List[str]:
        """
        Release every disbursement held longer than the configured delay.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            List[str]: References released by this call
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.settings.loan_release_delay_hours)
        released: List[str] = []

        async with session_scope(self.session_factory) as db:
            due = await self.ledger.list_due_disbursements(db, cutoff)
            for tx in due:
                won = await self.ledger.transition_status(
                    db,
                    tx.reference,
                    [TransactionStatus.PROCESSING],
                    TransactionStatus.COMPLETED,
                    patch={"status_note": RELEASED_NOTE},
                )
                if won:
                    released.append(tx.reference)

        metrics.record_loans_released(len(released))
        if released:
            logger.info("loans_released", count=len(released), references=released)
        return released

    async def run_forever(self) -> None:
        """Run release_due_loans every release_check_interval_seconds until cancelled."""
        interval = self.settings.release_check_interval_seconds
        logger.info("loan_release_worker_started", interval_seconds=interval)

        try:
            while True:
                try:
                    await self.release_due_loans()
                except Exception as e:
                    # Continue running even if one pass fails
                    logger.error("loan_release_pass_failed", error=str(e))
                await asyncio.sleep(interval)
        finally:
            logger.info("loan_release_worker_stopped")


async def start_loan_release_worker(settings: Optional[Settings] = None) -> None:
    """
    Run the worker as its own process.

    Stops cleanly on SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    engine = create_engine(settings)
    worker = LoanReleaseWorker(create_session_factory(engine), Ledger(), settings)
    task = asyncio.create_task(worker.run_forever())

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("loan_release_worker_shutdown_signal_received", signal=sig)
        task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await task
    except asyncio.CancelledError:
        pass
    finally:
        await close_db(engine)


def main() -> None:
    asyncio.run(start_loan_release_worker())


if __name__ == "__main__":
    main()
