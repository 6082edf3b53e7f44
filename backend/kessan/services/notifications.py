"""Fire-and-forget delivery of pipeline counters."""
import logging
from typing import Any, Dict, Optional

import httpx

from kessan.config import get_settings

logger = logging.getLogger(__name__)

IMPORT_COMPLETE = "import_complete"
RELEASE_ANALYZED = "release_analyzed"
REGENERATE_COMPLETE = "regenerate_complete"


class Notifier:
    """
    Hands aggregate counters to the notification service.

    Posts JSON to a webhook when one is configured and only logs otherwise.
    Delivery failures are logged; ``notify`` never raises.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else get_settings().notification_webhook_url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, event: str, payload: Dict[str, Any]) -> bool:
        logger.info("Notification %s: %s", event, payload)
        if not self.webhook_url:
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json={"event": event, **payload})
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to deliver %s notification: %s", event, exc)
            return False
        return True
