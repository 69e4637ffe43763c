"""
Receipt rendering.

A receipt is the public view of one transaction, served as JSON or as a
one-page PDF. Both are pure functions of the stored transaction.
"""
import io
from datetime import datetime
from typing import Any, Dict, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas

from database.models import Transaction, TransactionStatus, TransactionType

RECEIPT_TITLE = "SWIFTLOAN KENYA LOAN RECEIPT"
PLACEHOLDER = "N/A"

_STATUS_CLASSES = {
    TransactionStatus.COMPLETED.value: "success",
    TransactionStatus.PENDING.value: "pending",
    TransactionStatus.PROCESSING.value: "pending",
}

_BANNER_COLOURS = {
    "success": colors.HexColor("#2E7D32"),
    "pending": colors.HexColor("#1565C0"),
    "failure": colors.HexColor("#C62828"),
}


def status_class(status: str) -> str:
    """Group a status into 'success', 'pending' or 'failure'."""
    return _STATUS_CLASSES.get(status, "failure")


def watermark_text(tx: Transaction) -> str:
    if tx.status == TransactionStatus.COMPLETED.value:
        if tx.type == TransactionType.LOAN_DISBURSEMENT.value:
            return "RELEASED"
        return "PAID"
    if tx.status == TransactionStatus.TIMED_OUT.value:
        return "TIMED OUT"
    if tx.status in (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value):
        return tx.status.upper()
    return "FAILED"


def _loan_amount(tx: Transaction) -> Optional[int]:
    if tx.type == TransactionType.LOAN_DISBURSEMENT.value:
        return int(tx.amount)
    value = (tx.metadata_ or {}).get("loan_amount")
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def receipt_view(tx: Transaction) -> Dict[str, Any]:
    """
    Build the JSON receipt of a transaction.

    Args:
        tx: Stored transaction

    Returns:
        Dict[str, Any]: Receipt fields; amounts are numbers
    """
    metadata = dict(tx.metadata_ or {})
    return {
        "reference": tx.reference,
        "transaction_id": tx.gateway_reference,
        "transaction_code": metadata.get("mpesa_receipt_number"),
        "type": tx.type,
        "amount": int(tx.amount),
        "loan_amount": _loan_amount(tx),
        "phone": tx.user_phone,
        "status": tx.status,
        "status_note": tx.status_note,
        "description": tx.description,
        "metadata": metadata,
        "created_at": _iso(tx.created_at),
        "updated_at": _iso(tx.updated_at),
    }


def _money(value: Optional[int]) -> str:
    return f"KSH {value:,}" if value is not None else PLACEHOLDER


def render_receipt_pdf(tx: Transaction) -> bytes:
    """
    Render a one-page PDF receipt.

    Layout: a full-width banner coloured by status class, a details block
    and a diagonal watermark naming the status.

    Args:
        tx: Stored transaction

    Returns:
        bytes: PDF document
    """
    view = receipt_view(tx)
    width, height = A4
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Receipt {tx.reference}")

    # Banner
    banner_height = 30 * mm
    pdf.setFillColor(_BANNER_COLOURS[status_class(tx.status)])
    pdf.rect(0, height - banner_height, width, banner_height, stroke=0, fill=1)
    pdf.setFillColor(colors.white)
    pdf.setFont("Helvetica-Bold", 20)
    pdf.drawCentredString(width / 2, height - banner_height / 2 - 7, RECEIPT_TITLE)

    # Details
    timestamp = tx.updated_at or tx.created_at
    rows = [
        ("Reference", view["reference"]),
        ("Transaction ID", view["transaction_id"] or PLACEHOLDER),
        ("Amount", _money(view["amount"])),
        ("Loan Amount", _money(view["loan_amount"])),
        ("Phone", view["phone"] or PLACEHOLDER),
        ("Status", tx.status.upper()),
        ("Note", view["status_note"] or view["description"] or PLACEHOLDER),
        ("Time", timestamp.strftime("%Y-%m-%d %H:%M:%S UTC") if timestamp else PLACEHOLDER),
    ]

    y = height - banner_height - 25 * mm
    pdf.setFillColor(colors.black)
    pdf.setFont("Helvetica-Bold", 14)
    pdf.drawString(20 * mm, y, "Receipt Details")
    y -= 12 * mm

    for label, value in rows:
        pdf.setFont("Helvetica-Bold", 11)
        pdf.drawString(20 * mm, y, f"{label}:")
        pdf.setFont("Helvetica", 11)
        pdf.drawString(65 * mm, y, str(value)[:90])
        y -= 9 * mm

    # Watermark
    pdf.saveState()
    pdf.setFillColor(colors.grey)
    pdf.setFillAlpha(0.15)
    pdf.setFont("Helvetica-Bold", 72)
    pdf.translate(width / 2, height / 2 - 40 * mm)
    pdf.rotate(35)
    pdf.drawCentredString(0, 0, watermark_text(tx))
    pdf.restoreState()

    pdf.setFont("Helvetica-Oblique", 9)
    pdf.setFillColor(colors.grey)
    pdf.drawCentredString(width / 2, 15 * mm, "Thank you for choosing SwiftLoan Kenya.")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
