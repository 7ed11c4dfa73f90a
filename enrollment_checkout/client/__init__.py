"""Caller-side checkout: cached session and HTTP client."""
from .http import CheckoutApiClient, error_from_payload
from .session import CheckoutBackend, CheckoutSession

__all__ = ["CheckoutApiClient", "CheckoutBackend", "CheckoutSession", "error_from_payload"]
