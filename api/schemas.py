"""
Pydantic schemas for API request/response models.

Request fields are loosely typed on purpose: phone and amount rules are
enforced by the payment processor so that every rejection uses the same
error envelope.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class PayRequest(BaseModel):
    """Request schema for a service fee STK push."""

    phone: Optional[Union[str, int]] = Field(
        default=None, description="Phone number (07XXXXXXXX, 7XXXXXXXX or 2547XXXXXXXX)"
    )
    amount: Optional[Union[float, str]] = Field(default=None, description="Service fee in KES")
    loan_amount: Optional[Union[float, str]] = Field(
        default=None, description="Loan granted once the fee settles (KES)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone": "0712345678", "amount": 100, "loan_amount": 50000}]
        }
    }


class WithdrawRequest(BaseModel):
    """Request schema for a withdrawal."""

    phone: Optional[Union[str, int]] = Field(default=None, description="Phone number")
    amount: Optional[Union[float, str]] = Field(default=None, description="Amount in KES (minimum 100)")


class FailWithdrawalRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Reason shown on the receipt")


class Receipt(BaseModel):
    """Public view of one transaction."""

    reference: str
    transaction_id: Optional[str] = Field(default=None, description="Gateway transaction reference")
    transaction_code: Optional[str] = Field(default=None, description="M-Pesa receipt number")
    type: str
    amount: int = Field(..., description="Amount in KES")
    loan_amount: Optional[int] = Field(default=None, description="Loan amount in KES")
    phone: str
    status: str
    status_note: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")
    updated_at: Optional[str] = Field(default=None, description="Last update timestamp (ISO 8601)")


class PayResponse(BaseModel):
    success: bool
    message: str
    reference: str
    receipt: Receipt


class WithdrawResponse(BaseModel):
    success: bool
    message: str
    reference: str
    balance: int = Field(..., description="Balance after the hold (KES)")
    receipt: Receipt


class BalanceResponse(BaseModel):
    success: bool
    phone: str
    balance: int
    has_paid_fee: bool


class TransactionsResponse(BaseModel):
    success: bool
    phone: str
    transactions: List[Receipt]


class ReceiptResponse(BaseModel):
    success: bool
    receipt: Receipt


class ReleaseLoansResponse(BaseModel):
    success: bool
    released: List[str]


class CallbackAck(BaseModel):
    """Acknowledgement PayNecta expects for every delivery."""

    ResultCode: int = 0
    ResultDesc: str = "Success"


class ErrorResponse(BaseModel):
    """Envelope of every error response."""

    success: bool = False
    error: str
    reference: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
