"""PayNecta gateway integration."""
from .paynecta_client import GatewayError, GatewayStatus, PayNectaClient
from .webhook_handler import WebhookHandler

__all__ = ["GatewayError", "GatewayStatus", "PayNectaClient", "WebhookHandler"]
