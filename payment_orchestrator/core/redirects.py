"""Redirect targets shown to the user after a gateway round trip."""
from typing import Optional
from urllib.parse import quote

from payment_orchestrator.config import get_settings


def redirect_for(order_id: object, success: bool, frontend_url: Optional[str] = None) -> str:
    """
    Build the storefront URL for a payment outcome.

    Args:
        order_id: Order the payment belongs to
        success: Whether the payment settled
        frontend_url: Override for the storefront base URL

    Returns:
        str: Absolute redirect URL
    """
    base = (frontend_url or get_settings().frontend_url).rstrip("/")
    outcome = "success" if success else "failed"
    return f"{base}/orders/{order_id}/{outcome}"


def error_redirect(error_code: str, frontend_url: Optional[str] = None) -> str:
    """Redirect used when a callback cannot be tied to any order."""
    base = (frontend_url or get_settings().frontend_url).rstrip("/")
    return f"{base}/orders/failed?error={quote(error_code)}"
