"""External integrations for payment processing."""
from .stripe_client import GatewayError, StripeGateway
from .webhook_handler import WebhookHandler

__all__ = ["GatewayError", "StripeGateway", "WebhookHandler"]
