from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
import sentry_sdk

from scripttask.core.config import settings
from scripttask.utils.logger import get_logger

logger = get_logger(__name__)


class NotificationManager:
    """Operator notifications: logs, Sentry when configured, optional webhook."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 5.0,
    ) -> None:
        self.webhook_url = webhook_url or getattr(settings, "ALERT_WEBHOOK_URL", None)
        self._client = client
        self.timeout = timeout

    def notify(
        self,
        title: str,
        *,
        severity: str = "warning",
        context: Dict[str, Any] | None = None,
    ) -> bool:
        """Returns True when every configured channel accepted the alert."""
        payload = {"title": title, "severity": severity, "context": context or {}}
        logger.warning("alert_notification", **payload)
        delivered = True

        try:
            if settings.SENTRY_DSN:
                sentry_sdk.capture_message(f"{title} ({severity})")
        except Exception as e:  # noqa: BLE001
            logger.error("alert_sentry_error", error=str(e))
            delivered = False

        if self.webhook_url:
            try:
                if self._client is not None:
                    response = self._client.post(self.webhook_url, json=payload)
                else:
                    response = httpx.post(self.webhook_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("alert_webhook_error", error=str(e))
                delivered = False
        return delivered
