"""
PayNecta webhook handler.

Implements:
- Reference extraction from the several field names PayNecta may use
- Normalization of the payment status carried by the delivery
- Hand-off to the settlement reconciler

The HTTP endpoint acknowledges every delivery regardless of the outcome, so
nothing in here may raise to the caller.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from integrations.paynecta_client import GatewayStatus, parse_status_data
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACKNOWLEDGEMENT = {"ResultCode": 0, "ResultDesc": "Success"}


class WebhookError(Exception):
    """Raised when a webhook payload cannot be interpreted."""

    pass


@dataclass
class WebhookDelivery:
    """A parsed webhook delivery."""

    reference: Optional[str]
    status: GatewayStatus


def reference_candidates(payload: Dict[str, Any]) -> List[str]:
    """
    List the non-empty reference fields of a delivery, in priority order.

    Order: ``external_reference``, ``transaction_reference``, ``reference``,
    ``data.transaction_reference``.
    """
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    candidates = [
        payload.get("external_reference"),
        payload.get("transaction_reference"),
        payload.get("reference"),
        data.get("transaction_reference"),
    ]
    return [str(c).strip() for c in candidates if c and str(c).strip()]


def parse_webhook(payload: Any) -> WebhookDelivery:
    """
    Parse a webhook body.

    The payment object is ``payload['data']`` when present, else the body
    itself.

    Raises:
        WebhookError: If the body is not a JSON object
    """
    if not isinstance(payload, dict):
        raise WebhookError("Webhook body must be a JSON object")

    candidates = reference_candidates(payload)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload

    return WebhookDelivery(
        reference=candidates[0] if candidates else None,
        status=parse_status_data(data),
    )


class WebhookHandler:
    """
    Turns PayNecta deliveries into reconciler calls.

    Features:
    - Tolerant parsing (unknown shapes are logged and dropped)
    - Outcome metrics per delivery
    """

    def __init__(self, reconciler: Any):
        """
        Initialize webhook handler.

        Args:
            reconciler: SettlementReconciler that applies the delivery
        """
        self.reconciler = reconciler
        logger.info("webhook_handler_initialized")

    async def process(self, payload: Any) -> Dict[str, Any]:
        """
        Process one delivery.

        Args:
            payload: Decoded JSON body

        Returns:
            Dict[str, Any]: Processing result (for logging and tests only)
        """
        try:
            delivery = parse_webhook(payload)
        except WebhookError as e:
            logger.warning("webhook_rejected", error=str(e))
            metrics.record_webhook_event("invalid")
            return {"status": "invalid", "error": str(e)}

        if delivery.reference is None:
            logger.warning("webhook_without_reference", keys=sorted(payload.keys()))
            metrics.record_webhook_event("unknown_reference")
            return {"status": "unknown_reference"}

        logger.info(
            "webhook_received",
            reference=delivery.reference,
            status=delivery.status.status,
            result_code=delivery.status.result_code,
        )

        try:
            result = await self.reconciler.apply_webhook(delivery)
        except Exception as e:
            logger.error(
                "webhook_processing_failed",
                reference=delivery.reference,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_webhook_event("error")
            return {"status": "error", "reference": delivery.reference, "error": str(e)}

        if result is None:
            metrics.record_webhook_event("unknown_reference")
            return {"status": "unknown_reference", "reference": delivery.reference}

        metrics.record_webhook_event(result.outcome.value)
        return {
            "status": "processed",
            "reference": result.reference,
            "outcome": result.outcome.value,
            "applied": result.applied,
        }
