"""
HTTP client for the external payment authority.

Only used to look up a checkout session's authoritative payment status when a
customer returns from the payment page.
"""
import httpx
from typing import Optional

from .. import config


async def retrieve_session(session_id: str, base_url: Optional[str] = None) -> dict:
    """
    Fetch a payment session from the payment authority.

    Args:
        session_id: Session id issued at checkout (``ps_...``)
        base_url: Override for PAYMENT_AUTHORITY_URL

    Returns:
        Session data; ``payment_status`` is "paid", "unpaid" or "failed" and
        ``payment_intent_id`` is set once the payment was captured

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    url = f"{base_url or config.PAYMENT_AUTHORITY_URL}/sessions/{session_id}"
    async with httpx.AsyncClient(timeout=config.PAYMENT_AUTHORITY_TIMEOUT) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()
