"""
PayNecta API client for M-Pesa STK push payments.

Implements:
- STK push initiation
- Payment status queries
- Error classification (transient vs permanent)
- Circuit breaker pattern
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog

from config import Settings
from core.exceptions import UpstreamFailure
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Network, timeout, 5xx
    PERMANENT = "permanent"  # 4xx, refused requests


class GatewayError(UpstreamFailure):
    """Raised when a PayNecta call fails."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
        reference: Optional[str] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message (the gateway's own message when it sent one)
            error_type: Classification of error
            original_error: Underlying httpx exception
            reference: Transaction reference the call was made for
        """
        super().__init__(message, reference)
        self.error_type = error_type
        self.status_code = 400 if error_type is GatewayErrorType.PERMANENT else 500
        self.original_error = original_error


@dataclass
class InitiationResult:
    """Outcome of an STK push request."""

    success: bool
    transaction_reference: Optional[str]
    message: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayStatus:
    """Payment status as reported by PayNecta."""

    status: str
    amount: Optional[int] = None
    mobile_number: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    failure_reason: Optional[str] = None
    result_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None


def parse_status_data(data: Dict[str, Any]) -> GatewayStatus:
    """
    Build a GatewayStatus from the ``data`` object of a status response or webhook.

    Args:
        data: Payment object as sent by PayNecta

    Returns:
        GatewayStatus: Normalized status
    """
    result_code = data.get("result_code")
    result = data.get("result") if isinstance(data.get("result"), dict) else {}
    return GatewayStatus(
        status=str(data.get("status") or "").strip().lower(),
        amount=_as_int(data.get("amount")),
        mobile_number=data.get("mobile_number"),
        mpesa_receipt_number=(
            data.get("mpesa_receipt_number") or data.get("mpesa_transaction_id")
        ),
        failure_reason=(
            data.get("failure_reason") or result.get("ResultDesc")
        ),
        result_code=_as_int(result_code) if result_code is not None else None,
        raw=data,
    )


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops calling PayNecta for a while after repeated failures so that
    polling many transactions does not hammer an unavailable gateway.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check whether a call may proceed.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError(
                    "Payment gateway temporarily unavailable",
                    GatewayErrorType.TRANSIENT,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class PayNectaClient:
    """
    Async wrapper for the PayNecta payment API.

    Features:
    - API key / account email authentication headers
    - Per-operation timeouts (initiation 30s, status 10s by default)
    - Best-effort extraction of the gateway's error message
    - Circuit breaker pattern
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize PayNecta client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured httpx client (tests pass a mock transport)
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings
        self.client = http_client or httpx.AsyncClient(
            base_url=settings.paynecta_base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(settings.gateway_status_timeout, connect=5.0),
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info("paynecta_client_initialized", base_url=settings.paynecta_base_url)

    def _headers(self) -> Dict[str, str]:
        return {
            "X-API-Key": self.settings.paynecta_api_key,
            "X-User-Email": self.settings.paynecta_email,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:400] or f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {response.status_code}"

    async def _request(
        self, operation: str, method: str, url: str, timeout: float, **kwargs: Any
    ) -> Dict[str, Any]:
        """
        Perform a gateway call with classification and circuit breaking.

        Raises:
            GatewayError: On transport errors, timeouts, error statuses or bad JSON
        """
        self.circuit_breaker.before_call()
        start_time = time.time()

        try:
            response = await self.client.request(
                method, url, headers=self._headers(), timeout=timeout, **kwargs
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            self._record_failure(operation, GatewayErrorType.TRANSIENT, start_time)
            raise GatewayError(
                f"Payment gateway timed out after {timeout:.0f}s",
                GatewayErrorType.TRANSIENT,
                e,
            ) from e
        except httpx.HTTPStatusError as e:
            error_type = (
                GatewayErrorType.TRANSIENT
                if e.response.status_code >= 500
                else GatewayErrorType.PERMANENT
            )
            self._record_failure(operation, error_type, start_time)
            raise GatewayError(self._extract_message(e.response), error_type, e) from e
        except httpx.HTTPError as e:
            self._record_failure(operation, GatewayErrorType.TRANSIENT, start_time)
            raise GatewayError(
                f"Payment gateway unreachable: {e}", GatewayErrorType.TRANSIENT, e
            ) from e
        except ValueError as e:
            self._record_failure(operation, GatewayErrorType.TRANSIENT, start_time)
            raise GatewayError(
                "Payment gateway returned invalid JSON", GatewayErrorType.TRANSIENT, e
            ) from e

        self.circuit_breaker.on_success()
        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return data if isinstance(data, dict) else {}

    def _record_failure(
        self, operation: str, error_type: GatewayErrorType, start_time: float
    ) -> None:
        self.circuit_breaker.on_failure()
        metrics.record_gateway_call(operation, "error", time.time() - start_time)
        metrics.record_gateway_error(error_type.value)
        logger.error("paynecta_api_error", operation=operation, error_type=error_type.value)

    async def initiate(self, phone: str, amount: int) -> InitiationResult:
        """
        Send an STK push to the customer's phone.

        Not retried: a second request would prompt the customer twice.

        Args:
            phone: Canonical phone number
            amount: Amount in shillings

        Returns:
            InitiationResult: Whether the push was accepted and the gateway reference

        Raises:
            GatewayError: If the call fails
        """
        payload = {
            "code": self.settings.paynecta_code,
            "mobile_number": phone,
            "amount": amount,
        }

        logger.info("initiating_stk_push", phone=phone, amount=amount)

        body = await self._request(
            "initiate",
            "POST",
            "payment/initialize",
            self.settings.gateway_initiate_timeout,
            json=payload,
        )
        data = body.get("data") or {}

        result = InitiationResult(
            success=bool(body.get("success")),
            transaction_reference=data.get("transaction_reference"),
            message=str(body.get("message") or ""),
            raw=body,
        )

        logger.info(
            "stk_push_response",
            success=result.success,
            transaction_reference=result.transaction_reference,
            message=result.message,
        )
        return result

    async def query_status(self, transaction_reference: str) -> GatewayStatus:
        """
        Query the status of a payment by its gateway reference.

        Args:
            transaction_reference: Gateway-assigned transaction reference

        Returns:
            GatewayStatus: Status reported by the gateway

        Raises:
            GatewayError: If the call fails
        """
        body = await self._request(
            "query_status",
            "GET",
            "payment/status",
            self.settings.gateway_status_timeout,
            params={"transaction_reference": transaction_reference},
        )
        status = parse_status_data(body.get("data") or {})

        logger.info(
            "payment_status_retrieved",
            transaction_reference=transaction_reference,
            status=status.status,
        )
        return status

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
