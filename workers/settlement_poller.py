"""
Settlement status poller.

Every service fee sent to PayNecta gets one cancellable asyncio task that
asks the gateway for the payment status until it becomes final:

- Fixed interval between non-final answers
- Exponential backoff (capped) after failed queries
- Bounded number of ticks, after which the payment is marked timed_out

Tasks live in a registry keyed by reference so the webhook can stop them and
shutdown can cancel them. On startup, recover() re-arms polling for every
payment still pending in the store.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from config import Settings
from core.exceptions import NotFound
from core.ledger import Ledger
from core.reconciliation import SettlementReconciler
from integrations.paynecta_client import GatewayError, PayNectaClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class _PollState:
    """Per-task bookkeeping for the wait strategy."""

    def __init__(self, interval: float, backoff_max: float):
        self.interval = interval
        self.backoff_max = backoff_max
        self.consecutive_errors = 0

    def next_delay(self, retry_state: RetryCallState) -> float:
        if not self.consecutive_errors:
            return self.interval
        return min(self.interval * (2 ** self.consecutive_errors), self.backoff_max)


class SettlementPoller:
    """
    Registry of status polling tasks.

    Usage:
        poller = SettlementPoller(gateway, reconciler, session_factory, ledger, settings)
        poller.arm("ORDER-1700000000000", "PNT-TX-123")
    """

    def __init__(
        self,
        gateway: PayNectaClient,
        reconciler: SettlementReconciler,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: Ledger,
        settings: Settings,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """
        Initialize poller.

        Args:
            gateway: PayNecta client used for status queries
            reconciler: Reconciler that applies each answer
            session_factory: Session factory (used by recover)
            ledger: Ledger store (used by recover)
            settings: Interval, backoff cap and attempt limit
            sleep: Optional sleep coroutine (tests)
        """
        self.gateway = gateway
        self.reconciler = reconciler
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings
        self._sleep = sleep or asyncio.sleep
        self._tasks: Dict[str, asyncio.Task] = {}

        reconciler.poller = self

    def active_references(self) -> List[str]:
        return [ref for ref, task in self._tasks.items() if not task.done()]

    def arm(self, reference: str, gateway_reference: str) -> asyncio.Task:
        """
        Start polling a payment. Arming an already polled reference is a no-op.

        Returns:
            asyncio.Task: The polling task
        """
        existing = self._tasks.get(reference)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(
            self._poll(reference, gateway_reference), name=f"poll:{reference}"
        )
        self._tasks[reference] = task
        task.add_done_callback(lambda t, ref=reference: self._on_done(ref, t))
        metrics.set_active_polls(len(self._tasks))

        logger.info(
            "settlement_poll_armed",
            reference=reference,
            gateway_reference=gateway_reference,
        )
        return task

    def cancel(self, reference: str) -> bool:
        """
        Stop polling a payment.

        A task that is finishing on its own (the caller is the task itself)
        is left to return normally.
        """
        task = self._tasks.pop(reference, None)
        metrics.set_active_polls(len(self._tasks))
        if task is None or task.done():
            return False
        if task is asyncio.current_task():
            return False
        task.cancel()
        logger.info("settlement_poll_cancelled", reference=reference)
        return True

    async def shutdown(self) -> None:
        """Cancel every polling task and wait for them to unwind."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        metrics.set_active_polls(0)
        logger.info("settlement_poller_stopped", cancelled=len(tasks))

    async def recover(self) -> int:
        """
        Re-arm polling for payments left pending by a previous process.

        Returns:
            int: Number of polls armed
        """
        async with self.session_factory() as db:
            pending = await self.ledger.list_pending_settlements(db)

        for tx in pending:
            self.arm(tx.reference, tx.gateway_reference)

        logger.info("settlement_polls_recovered", count=len(pending))
        return len(pending)

    def _on_done(self, reference: str, task: asyncio.Task) -> None:
        if self._tasks.get(reference) is task:
            del self._tasks[reference]
        metrics.set_active_polls(len(self._tasks))

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "settlement_poll_crashed",
                reference=reference,
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _tick(self, reference: str, gateway_reference: str, state: _PollState) -> bool:
        """
        Query and apply the gateway status once.

        Returns:
            bool: True when polling should stop
        """
        try:
            status = await self.gateway.query_status(gateway_reference)
        except GatewayError as e:
            state.consecutive_errors += 1
            metrics.record_poll_tick("error")
            logger.warning(
                "settlement_poll_query_failed",
                reference=reference,
                error=e.message,
                error_type=e.error_type.value,
                consecutive_errors=state.consecutive_errors,
            )
            raise

        state.consecutive_errors = 0
        try:
            result = await self.reconciler.apply_gateway_status(reference, status, source="poll")
        except NotFound:
            logger.warning("settlement_poll_reference_missing", reference=reference)
            return True
        except SQLAlchemyError as e:
            state.consecutive_errors += 1
            metrics.record_poll_tick("error")
            logger.warning(
                "settlement_poll_apply_failed",
                reference=reference,
                error=str(e),
                error_type=type(e).__name__,
                consecutive_errors=state.consecutive_errors,
            )
            raise

        metrics.record_poll_tick(result.outcome.value)
        return result.outcome.terminal

    async def _poll(self, reference: str, gateway_reference: str) -> None:
        state = _PollState(
            float(self.settings.poll_interval_seconds),
            float(self.settings.poll_backoff_max_seconds),
        )
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((GatewayError, SQLAlchemyError))
            | retry_if_result(lambda done: not done),
            wait=state.next_delay,
            stop=stop_after_attempt(self.settings.poll_max_attempts),
            sleep=self._sleep,
        )

        await self._sleep(state.interval)
        try:
            await retrying(self._tick, reference, gateway_reference, state)
        except RetryError:
            await self.reconciler.mark_timed_out(reference, self.settings.poll_max_attempts)
            return

        logger.info("settlement_poll_finished", reference=reference)
