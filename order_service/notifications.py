from typing import Any, Dict, Optional

import httpx

from . import config
from .logs import correlation_id, get_logger

logger = get_logger("notifications")

ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"


class NotificationSender:
    """Fire-and-forget push delivery through notification-service."""

    def __init__(self, base_url: str = config.NOTIFICATION_SERVICE_URL, client: Optional[httpx.Client] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.client = client or httpx.Client(timeout=config.HTTP_TIMEOUT_SECONDS)

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        if not (self.base_url and user_id):
            return
        cid = correlation_id.get()
        try:
            r = self.client.post(
                f"{self.base_url}/v1/notifications/push",
                json={"user_id": user_id, "kind": kind, "payload": payload, "correlation_id": cid},
                headers={"X-Correlation-Id": cid},
            )
            if r.status_code >= 400:
                logger.warning(f"Notification to user {user_id} rejected with {r.status_code}")
        except Exception as e:
            logger.warning(f"Failed to send {kind} notification to user {user_id}: {e}")
