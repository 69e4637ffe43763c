"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import PayRequest, PayResponse, Receipt, WithdrawRequest, WithdrawResponse

__all__ = [
    "app",
    "create_app",
    "PayRequest",
    "PayResponse",
    "Receipt",
    "WithdrawRequest",
    "WithdrawResponse",
]
