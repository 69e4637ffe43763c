"""
Unit tests for the PayNecta webhook handler.
"""
from typing import Any

import pytest

from integrations.webhook_handler import (
    WebhookError,
    WebhookHandler,
    parse_webhook,
    reference_candidates,
)


class TestParseWebhook:
    """Payload interpretation."""

    @pytest.mark.unit
    def test_reference_priority(self) -> None:
        payload = {
            "reference": "C",
            "transaction_reference": "B",
            "external_reference": "A",
            "data": {"transaction_reference": "D"},
        }

        assert reference_candidates(payload) == ["A", "B", "C", "D"]

    @pytest.mark.unit
    def test_blank_references_skipped(self) -> None:
        assert reference_candidates({"external_reference": "  ", "reference": "ORDER-1"}) == [
            "ORDER-1"
        ]

    @pytest.mark.unit
    def test_status_from_data_object(self) -> None:
        delivery = parse_webhook(
            {
                "external_reference": "ORDER-1",
                "status": "ignored",
                "data": {"status": "Completed", "mpesa_receipt_number": "QKX1", "amount": "100"},
            }
        )

        assert delivery.reference == "ORDER-1"
        assert delivery.status.status == "completed"
        assert delivery.status.mpesa_receipt_number == "QKX1"
        assert delivery.status.amount == 100

    @pytest.mark.unit
    def test_status_from_top_level(self) -> None:
        delivery = parse_webhook({"reference": "ORDER-1", "status": "failed", "result_code": "1032"})

        assert delivery.status.status == "failed"
        assert delivery.status.result_code == 1032

    @pytest.mark.unit
    def test_result_description_as_failure_reason(self) -> None:
        delivery = parse_webhook(
            {"reference": "ORDER-1", "status": "failed", "result": {"ResultDesc": "Cancelled"}}
        )

        assert delivery.status.failure_reason == "Cancelled"

    @pytest.mark.unit
    @pytest.mark.parametrize("payload", [[1, 2], "completed", None, 42])
    def test_non_object_rejected(self, payload: Any) -> None:
        with pytest.raises(WebhookError):
            parse_webhook(payload)


class TestWebhookHandler:
    """Delivery processing outcomes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processed(self, reconciler: Any, pending_fee: Any) -> None:
        reference = await pending_fee()
        handler = WebhookHandler(reconciler)

        result = await handler.process({"external_reference": reference, "status": "completed"})

        assert result == {
            "status": "processed",
            "reference": reference,
            "outcome": "settle",
            "applied": True,
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_body(self, reconciler: Any) -> None:
        result = await WebhookHandler(reconciler).process(["not", "an", "object"])

        assert result["status"] == "invalid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_reference(self, reconciler: Any) -> None:
        result = await WebhookHandler(reconciler).process({"status": "completed"})

        assert result == {"status": "unknown_reference"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference(self, reconciler: Any) -> None:
        result = await WebhookHandler(reconciler).process(
            {"external_reference": "ORDER-404", "status": "completed"}
        )

        assert result == {"status": "unknown_reference", "reference": "ORDER-404"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reconciler_failure_is_contained(self, reconciler: Any, mocker: Any) -> None:
        mocker.patch.object(reconciler, "apply_webhook", side_effect=RuntimeError("db down"))

        result = await WebhookHandler(reconciler).process(
            {"external_reference": "ORDER-1", "status": "completed"}
        )

        assert result["status"] == "error"
        assert result["error"] == "db down"
