"""
Main FastAPI application.

SwiftLoan payments API with:
- CORS configuration for the loan frontends
- Error envelope for every failure
- Request ID tracking
- Structured logging
- Prometheus metrics
- Settlement polling and loan release running in the lifespan
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from core.exceptions import InternalError, SwiftLoanError
from core.ledger import Ledger
from core.payment_processor import PaymentProcessor
from core.reconciliation import SettlementReconciler
from database.connection import close_db, create_engine, create_session_factory, init_db
from integrations.paynecta_client import PayNectaClient
from integrations.webhook_handler import WebhookHandler
from monitoring.health import HealthCheck
from monitoring.logging import setup_logging
from workers.loan_release_worker import LoanReleaseWorker
from workers.settlement_poller import SettlementPoller

from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def _error_body(message: str, reference: Optional[str] = None) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": message}
    if reference:
        body["reference"] = reference
    return body


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the services, re-arms polling for unsettled payments, and tears
    everything down on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    engine = create_engine(settings)
    try:
        await init_db(engine)
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    session_factory = create_session_factory(engine)
    ledger = Ledger()
    owns_gateway = app.state.gateway is None
    gateway = app.state.gateway or PayNectaClient(settings)

    reconciler = SettlementReconciler(session_factory, ledger, settings)
    poller = SettlementPoller(gateway, reconciler, session_factory, ledger, settings)
    release_worker = LoanReleaseWorker(session_factory, ledger, settings)

    app.state.session_factory = session_factory
    app.state.ledger = ledger
    app.state.reconciler = reconciler
    app.state.poller = poller
    app.state.release_worker = release_worker
    app.state.payment_processor = PaymentProcessor(
        session_factory, ledger, gateway, settings, poller=poller
    )
    app.state.webhook_handler = WebhookHandler(reconciler)
    app.state.health_check = HealthCheck(session_factory, gateway, poller)

    await poller.recover()

    release_task = None
    if settings.enable_release_worker:
        release_task = asyncio.create_task(release_worker.run_forever())

    yield

    # Shutdown
    logger.info("application_shutdown")
    if release_task is not None:
        release_task.cancel()
        await asyncio.gather(release_task, return_exceptions=True)
    await poller.shutdown()
    if owns_gateway:
        await gateway.close()
    try:
        await close_db(engine)
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def swiftloan_error_handler(request: Request, exc: SwiftLoanError) -> JSONResponse:
    """Map the error taxonomy to the JSON envelope."""
    message = exc.message
    if isinstance(exc, InternalError):
        logger.error("internal_error", error=exc.message, reference=exc.reference)
        message = "Server error"
    else:
        logger.info(
            "request_rejected",
            error=exc.message,
            error_type=type(exc).__name__,
            reference=exc.reference,
        )
    return JSONResponse(status_code=exc.status_code, content=_error_body(message, exc.reference))


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors and errors[0].get("type") == "json_invalid":
        message = "Invalid JSON body"
    elif errors:
        field = ".".join(str(part) for part in errors[0].get("loc", ())[1:])
        message = f"Invalid {field}" if field else errors[0].get("msg", message)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(message))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Server error"),
    )


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PayNectaClient] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings (defaults to get_settings())
        gateway: Optional PayNecta client to use instead of building one

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="SwiftLoan Payments",
        description=(
            "Loan service fee collection over M-Pesa STK push via PayNecta. "
            "Features: settlement polling and webhooks with exactly-once loan credit, "
            "withdrawals, receipts and monitoring."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(SwiftLoanError, swiftloan_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
