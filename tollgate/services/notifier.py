"""
Notifier
========
Best-effort delivery of alert notifications to a webhook.
"""

from typing import Optional, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

TITLES = {
    "token_warning": "Tollgate Warning",
    "token_critical": "Tollgate Critical",
    "rate_limit_hit": "Rate Limit Hit",
}


class Notifier(Protocol):
    async def notify(self, alert_type: str, message: str) -> None: ...


class NullNotifier:
    """Used when notifications are disabled."""

    async def notify(self, alert_type: str, message: str) -> None:
        return None


class WebhookNotifier:
    """
    Posts alerts as JSON to a webhook URL.

    Failures are retried with exponential backoff, then logged; notify()
    never raises.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "tollgate-notifier/1.0.0"},
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        retry=retry_if_exception_type(httpx.HTTPError),
    )
    async def _send(self, payload: dict[str, str]) -> None:
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()

    async def notify(self, alert_type: str, message: str) -> None:
        payload = {
            "title": TITLES.get(alert_type, "Tollgate Alert"),
            "body": message,
            "type": alert_type,
        }
        try:
            await self._send(payload)
            logger.debug("Notification delivered", alert=alert_type)
        except Exception as e:
            logger.warning("Notification delivery failed", alert=alert_type, error=str(e))

    async def aclose(self) -> None:
        await self._client.aclose()
