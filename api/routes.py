"""
API routes for loan service fee payments, withdrawals and receipts.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from core.ledger import DEFAULT_PAGE_SIZE, Ledger
from core.payment_processor import PaymentProcessor
from core.phone import normalize_phone
from core.receipts import receipt_view, render_receipt_pdf
from integrations.webhook_handler import ACKNOWLEDGEMENT, WebhookHandler
from monitoring.health import HealthCheck
from workers.loan_release_worker import LoanReleaseWorker

from .dependencies import (
    get_db,
    get_health_check,
    get_ledger,
    get_processor,
    get_release_worker,
    get_webhook_handler,
    require_admin,
)
from .schemas import (
    BalanceResponse,
    CallbackAck,
    ErrorResponse,
    FailWithdrawalRequest,
    HealthCheckResponse,
    PayRequest,
    PayResponse,
    ReceiptResponse,
    ReleaseLoansResponse,
    TransactionsResponse,
    WithdrawRequest,
    WithdrawResponse,
)

logger = structlog.get_logger(__name__)

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

# Create routers
payment_router = APIRouter(tags=["payments"], responses=ERROR_RESPONSES)
webhook_router = APIRouter(tags=["webhooks"])
admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    responses=ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "/pay",
    response_model=PayResponse,
    summary="Pay the loan service fee",
    description="Send an M-Pesa STK push for the service fee",
)
async def pay(
    request: PayRequest,
    processor: PaymentProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    """
    Initiate a service fee payment.

    The reference is returned even when the gateway refuses the push.
    """
    logger.info("api_pay_request", amount=request.amount, loan_amount=request.loan_amount)
    return await processor.initiate_payment(request.phone, request.amount, request.loan_amount)


@payment_router.get("/balance/{phone}", response_model=BalanceResponse, summary="Get balance")
async def get_balance(
    phone: str,
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
) -> Dict[str, Any]:
    phone = normalize_phone(phone)
    user = await ledger.get_user(db, phone)
    return {
        "success": True,
        "phone": phone,
        "balance": user.balance if user else 0,
        "has_paid_fee": bool(user and user.has_paid_fee),
    }


@payment_router.get(
    "/transactions/{phone}",
    response_model=TransactionsResponse,
    summary="List transactions",
    description="Most recent transactions of a phone number, newest first",
)
async def list_transactions(
    phone: str,
    limit: int = Query(default=DEFAULT_PAGE_SIZE, description="Page size (1-100)"),
    db: AsyncSession = Depends(get_db),
    ledger: Ledger = Depends(get_ledger),
) -> Dict[str, Any]:
    phone = normalize_phone(phone)
    transactions = await ledger.list_transactions(db, phone, limit)
    return {
        "success": True,
        "phone": phone,
        "transactions": [receipt_view(tx) for tx in transactions],
    }


@payment_router.post(
    "/withdraw",
    response_model=WithdrawResponse,
    summary="Withdraw to M-Pesa",
    description="Hold funds for a withdrawal (minimum KES 100, fee must be paid)",
)
async def withdraw(
    request: WithdrawRequest,
    processor: PaymentProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    return await processor.request_withdrawal(request.phone, request.amount)


@payment_router.get("/receipt/{reference}", response_model=ReceiptResponse, summary="Get receipt")
async def get_receipt(
    reference: str,
    processor: PaymentProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    tx = await processor.get_receipt(reference)
    return {"success": True, "receipt": receipt_view(tx)}


@payment_router.get(
    "/receipt/{reference}/pdf",
    summary="Download receipt PDF",
    response_class=Response,
    responses={200: {"content": {"application/pdf": {}}}},
)
async def get_receipt_pdf(
    reference: str,
    processor: PaymentProcessor = Depends(get_processor),
) -> Response:
    tx = await processor.get_receipt(reference)
    return Response(
        content=render_receipt_pdf(tx),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="receipt-{reference}.pdf"'},
    )


@webhook_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="PayNecta webhook endpoint",
    description="Payment status deliveries; always acknowledged",
)
async def paynecta_callback(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """
    Handle PayNecta webhook deliveries.

    Every delivery is acknowledged so the gateway does not retry; failures
    are logged and left to the poller.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("api_webhook_invalid_json")
        return ACKNOWLEDGEMENT

    result = await handler.process(payload)
    logger.info("api_webhook_processed", **result)
    return ACKNOWLEDGEMENT


@admin_router.post(
    "/withdrawals/{reference}/complete",
    response_model=ReceiptResponse,
    summary="Complete a held withdrawal",
)
async def complete_withdrawal(
    reference: str,
    processor: PaymentProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    tx = await processor.complete_withdrawal(reference)
    return {"success": True, "receipt": receipt_view(tx)}


@admin_router.post(
    "/withdrawals/{reference}/fail",
    response_model=ReceiptResponse,
    summary="Fail a held withdrawal",
    description="Marks the withdrawal failed and returns the held amount",
)
async def fail_withdrawal(
    reference: str,
    request: Optional[FailWithdrawalRequest] = None,
    processor: PaymentProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    tx = await processor.fail_withdrawal(reference, request.reason if request else None)
    return {"success": True, "receipt": receipt_view(tx)}


@admin_router.post(
    "/release-loans",
    response_model=ReleaseLoansResponse,
    summary="Release due loans",
    description="Run the loan release worker once",
)
async def release_loans(
    worker: LoanReleaseWorker = Depends(get_release_worker),
) -> Dict[str, Any]:
    released = await worker.release_due_loans()
    return {"success": True, "released": released}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
