"""
Pytest configuration and fixtures.
"""
import os

os.environ.setdefault("PAYNECTA_API_KEY", "test-api-key")
os.environ.setdefault("PAYNECTA_EMAIL", "ops@swiftloan.test")
os.environ.setdefault("PAYNECTA_CODE", "PNT_TEST01")
os.environ.setdefault("ENABLE_RELEASE_WORKER", "false")

from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.main import create_app
from config import Settings
from core.ledger import Direction, Ledger
from core.payment_processor import PaymentProcessor
from core.reconciliation import SettlementReconciler
from database.connection import close_db, create_engine, create_session_factory, init_db, session_scope
from database.models import TransactionStatus, TransactionType
from integrations.paynecta_client import PayNectaClient
from workers.settlement_poller import SettlementPoller

TEST_PHONE = "254712345678"
ADMIN_TOKEN = "test-admin-token"


class PayNectaStub:
    """
    In-memory PayNecta served through httpx.MockTransport.

    - ``initiate_body`` / ``initiate_status`` shape the STK push answer
    - ``initiate_error`` makes the transport raise instead
    - ``statuses[gateway_reference]`` is consumed in order; the last entry repeats.
      Entries are status dicts, HTTP error codes or exceptions to raise
    """

    def __init__(self) -> None:
        self.initiate_status = 200
        self.initiate_body: Optional[Dict[str, Any]] = None
        self.initiate_error: Optional[Exception] = None
        self.statuses: Dict[str, List[Any]] = {}
        self.status_error: Optional[Exception] = None
        self.requests: List[httpx.Request] = []
        self._counter = 0

    def status_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/payment/status")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if request.url.path.endswith("/payment/initialize"):
            if self.initiate_error is not None:
                raise self.initiate_error
            if self.initiate_body is not None:
                return httpx.Response(self.initiate_status, json=self.initiate_body)
            self._counter += 1
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "message": "STK push sent",
                    "data": {"transaction_reference": f"PNT-TX-{self._counter}"},
                },
            )

        if request.url.path.endswith("/payment/status"):
            if self.status_error is not None:
                raise self.status_error
            gateway_reference = request.url.params.get("transaction_reference")
            queue = self.statuses.get(gateway_reference) or [{"status": "pending"}]
            answer = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(answer, Exception):
                raise answer
            if isinstance(answer, int):
                return httpx.Response(answer, json={"message": f"HTTP {answer}"})
            return httpx.Response(
                200,
                json={"success": True, "data": {"transaction_reference": gateway_reference, **answer}},
            )

        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings backed by a temporary SQLite database."""
    return Settings(
        paynecta_api_key="test-api-key",
        paynecta_email="ops@swiftloan.test",
        paynecta_code="PNT_TEST01",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        app_name="swiftloan-payments-test",
        app_env="test",
        log_level="DEBUG",
        poll_interval_seconds=0.01,
        poll_max_attempts=3,
        poll_backoff_max_seconds=0.05,
        enable_release_worker=False,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a fresh schema and hand out its session factory."""
    engine = create_engine(test_settings)
    await init_db(engine)
    yield create_session_factory(engine)
    await close_db(engine)


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def paynecta() -> PayNectaStub:
    return PayNectaStub()


@pytest_asyncio.fixture
async def gateway(
    test_settings: Settings, paynecta: PayNectaStub
) -> AsyncGenerator[PayNectaClient, Any]:
    """PayNecta client talking to the in-memory stub."""
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(paynecta.handler),
        base_url=test_settings.paynecta_base_url.rstrip("/") + "/",
    )
    client = PayNectaClient(test_settings, http_client=http_client)
    yield client
    await client.close()


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession], ledger: Ledger, test_settings: Settings
) -> SettlementReconciler:
    return SettlementReconciler(session_factory, ledger, test_settings)


@pytest_asyncio.fixture
async def poller(
    gateway: PayNectaClient,
    reconciler: SettlementReconciler,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: Ledger,
    test_settings: Settings,
) -> AsyncGenerator[SettlementPoller, Any]:
    poller = SettlementPoller(gateway, reconciler, session_factory, ledger, test_settings)
    yield poller
    await poller.shutdown()


@pytest_asyncio.fixture
async def idle_poller(
    gateway: PayNectaClient,
    reconciler: SettlementReconciler,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: Ledger,
    test_settings: Settings,
) -> AsyncGenerator[SettlementPoller, Any]:
    """Poller whose first tick is a minute away, for tests that only check arming."""
    settings = test_settings.model_copy(update={"poll_interval_seconds": 60})
    poller = SettlementPoller(gateway, reconciler, session_factory, ledger, settings)
    yield poller
    await poller.shutdown()


@pytest.fixture
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: Ledger,
    gateway: PayNectaClient,
    test_settings: Settings,
    idle_poller: SettlementPoller,
) -> PaymentProcessor:
    return PaymentProcessor(session_factory, ledger, gateway, test_settings, poller=idle_poller)


@pytest.fixture
def pending_fee(
    session_factory: async_sessionmaker[AsyncSession], ledger: Ledger
) -> Callable[..., Awaitable[str]]:
    """Factory recording a pending service fee that was sent to the gateway."""

    async def create(
        reference: str = "ORDER-1700000000000",
        gateway_reference: Optional[str] = "PNT-TX-1",
        phone: str = TEST_PHONE,
        amount: int = 100,
        loan_amount: Optional[int] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> str:
        metadata = {"loan_amount": loan_amount} if loan_amount is not None else {}
        async with session_scope(session_factory) as db:
            await ledger.get_or_create_user(db, phone)
            await ledger.create_transaction(
                db,
                reference=reference,
                user_phone=phone,
                type=TransactionType.SERVICE_FEE,
                amount=amount,
                status=status,
                gateway_reference=gateway_reference,
                metadata=metadata,
            )
        return reference

    return create


@pytest.fixture
def funded_user(
    session_factory: async_sessionmaker[AsyncSession], ledger: Ledger
) -> Callable[..., Awaitable[str]]:
    """Factory creating a user with a balance and, by default, the fee paid."""

    async def create(balance: int, phone: str = TEST_PHONE, fee_paid: bool = True) -> str:
        async with session_scope(session_factory) as db:
            await ledger.get_or_create_user(db, phone)
            if balance:
                await ledger.adjust_balance(db, phone, balance, Direction.CREDIT)
            if fee_paid:
                await ledger.mark_fee_paid(db, phone)
        return phone

    return create


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, gateway: PayNectaClient
) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client for an application running its lifespan against the stub gateway."""
    # Slow polling so background ticks do not race the assertions
    settings = test_settings.model_copy(update={"poll_interval_seconds": 60, "admin_token": ADMIN_TOKEN})
    app = create_app(settings, gateway=gateway)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            ac.app = app  # type: ignore[attr-defined]
            yield ac
