"""HTTP API for order payments, webhooks and cache administration."""
from .main import create_app

__all__ = ["create_app"]
