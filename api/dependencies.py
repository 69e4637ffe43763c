"""
Request dependencies.

Services are created once per application in the lifespan and read from
``app.state``.
"""
import secrets
from typing import Any, AsyncGenerator, Optional

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import Unauthorized
from core.ledger import Ledger
from core.payment_processor import PaymentProcessor
from database.connection import session_scope
from integrations.webhook_handler import WebhookHandler
from monitoring.health import HealthCheck
from workers.loan_release_worker import LoanReleaseWorker


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting a database session.

    Usage:
        @app.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with session_scope(request.app.state.session_factory) as session:
        yield session


def get_ledger(request: Request) -> Ledger:
    return request.app.state.ledger


def get_processor(request: Request) -> PaymentProcessor:
    return request.app.state.payment_processor


def get_webhook_handler(request: Request) -> WebhookHandler:
    return request.app.state.webhook_handler


def get_release_worker(request: Request) -> LoanReleaseWorker:
    return request.app.state.release_worker


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    """
    Guard for the /admin endpoints.

    The X-Admin-Token header must match ``settings.admin_token``; with no
    token configured every admin call is refused.
    """
    expected = request.app.state.settings.admin_token
    if not expected or not x_admin_token or not secrets.compare_digest(
        expected.encode(), x_admin_token.encode()
    ):
        raise Unauthorized("Admin token required")
