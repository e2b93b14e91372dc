"""
Outbound order notifications.

Subscribers listed in WEBHOOK_URLS receive order events after the change has
been committed. Delivery is best effort: a failing subscriber is logged and
never affects the order.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"


async def send_webhook(event_type: str, data: Dict[str, Any], urls: Optional[List[str]] = None) -> None:
    """
    Send a webhook notification to every registered URL concurrently.

    Args:
        event_type: Type of event (e.g., "order.created")
        data: Event data payload
        urls: Override for WEBHOOK_URLS
    """
    urls = config.WEBHOOK_URLS if urls is None else urls
    if not urls:
        return

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT) as client:
        await asyncio.gather(*(send_single_webhook(client, url, payload) for url in urls))


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> None:
    try:
        response = await client.post(url, json=payload)
        if response.status_code >= 400:
            logger.warning(f"Webhook {payload['event']} failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {payload['event']} error for {url}: {e}")


async def notify_order_created(order_data: Dict[str, Any]) -> None:
    await send_webhook(ORDER_CREATED, order_data)


async def notify_order_status_changed(order_number: str, old_status: str, new_status: str) -> None:
    """
    Notify subscribers that an order moved between statuses.

    Args:
        order_number: Human-facing order number
        old_status: Previous status
        new_status: New status
    """
    if old_status == new_status:
        return
    await send_webhook(ORDER_STATUS_CHANGED, {
        "order_number": order_number,
        "old_status": old_status,
        "new_status": new_status,
    })
