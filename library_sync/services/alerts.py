"""Failure alerts for repeated sync errors."""

import logging
import socket

import httpx

from library_sync.config import get_settings
from library_sync.timeutils import utcnow

logger = logging.getLogger(__name__)
settings = get_settings()


class FailureAlerter:
    """
    Notifies an operator when sync runs keep failing.

    Posts a JSON payload to ``alert_webhook_url`` when configured, otherwise
    only logs. Delivery problems are logged and never fail the caller.
    """

    def __init__(
        self,
        webhook_url: str | None = settings.alert_webhook_url,
        threshold: int = settings.alert_failure_threshold,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.threshold = threshold
        self.timeout = timeout

    def should_alert(self, consecutive_failures: int) -> bool:
        return self.threshold > 0 and consecutive_failures >= self.threshold

    async def send_consecutive_failures_alert(
        self,
        failure_count: int,
        last_error: str | None,
        run_id: int | None = None,
    ) -> bool:
        """
        Send an alert about ``failure_count`` consecutive failed runs.

        Returns:
            True if the webhook accepted the alert
        """
        logger.error(
            f"{failure_count} consecutive sync failures (run {run_id}). Last error: {last_error}"
        )
        if not self.webhook_url:
            return False

        payload = {
            "event": "sync_consecutive_failures",
            "failure_count": failure_count,
            "run_id": run_id,
            "last_error": last_error,
            "host": socket.gethostname(),
            "timestamp": utcnow().isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to deliver failure alert: {e}")
            return False

        logger.info(f"Failure alert sent to webhook ({failure_count} failures)")
        return True
