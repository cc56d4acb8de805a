"""
Webhook system for sending inventory event notifications.

Allows external systems (purchasing, chat bots, e-mail relays) to subscribe to
low stock events.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)


async def send_webhook(
    event_type: str,
    data: Dict[str, Any],
    urls: Optional[List[str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> int:
    """
    Send webhook notifications to all registered URLs.

    Args:
        event_type: Type of event (e.g., "inventory.low_stock")
        data: Event data payload
        urls: Target URLs; defaults to the configured WEBHOOK_URLS
        transport: Optional httpx transport (used by tests)

    Returns:
        Number of URLs that accepted the notification
    """
    targets = config.WEBHOOK_URLS if urls is None else urls
    if not targets:
        return 0

    payload = {
        "event": event_type,
        "data": data,
        "timestamp": datetime.utcnow().isoformat(),
    }

    async with httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT, transport=transport) as client:
        tasks = [send_single_webhook(client, url, payload) for url in targets]
        # Send all webhooks concurrently
        delivered = await asyncio.gather(*tasks, return_exceptions=True)

    return sum(1 for ok in delivered if ok is True)


async def send_single_webhook(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> bool:
    """
    Send a webhook to a single URL.

    Args:
        client: HTTP client
        url: Webhook URL
        payload: Event payload

    Returns:
        True if the receiver answered with a non-error status
    """
    try:
        response = await client.post(url, json=payload)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
        return False
    return True
