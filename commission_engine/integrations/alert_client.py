"""
Operational alert delivery to a Telegram-style bot API.

Retries transient failures (network errors, 429, 5xx) with exponential
backoff; client errors are permanent and not retried.
"""
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from commission_engine.config import Settings, get_settings

logger = structlog.get_logger(__name__)

PRIORITY_PREFIX = {
    "high": "[HIGH]",
    "medium": "[MEDIUM]",
    "low": "[LOW]",
}


class AlertDeliveryError(Exception):
    """Raised when an alert cannot be delivered."""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class TransientAlertError(AlertDeliveryError):
    """Delivery failed in a way that may succeed on retry."""


def format_alert(message: str, data: Optional[Dict[str, Any]] = None, priority: str = "medium") -> str:
    """
    Render an alert as plain text.

    Args:
        message: Headline
        data: Extra key/value context, one line each
        priority: high, medium or low

    Returns:
        str: Message body
    """
    lines = [f"{PRIORITY_PREFIX.get(priority, PRIORITY_PREFIX['medium'])} {message}"]
    for key, value in (data or {}).items():
        lines.append(f"{key}: {value}")
    return "\n".join(lines)


class AlertClient:
    """Sends formatted alerts to the configured chat."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize alert client.

        Args:
            settings: Application settings
            http_client: Optional shared HTTP client (created per call otherwise)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client

    @property
    def enabled(self) -> bool:
        return self.settings.alerts_enabled

    def _endpoint(self) -> str:
        token = self.settings.telegram_bot_token.get_secret_value()
        return f"{self.settings.telegram_api_base}/bot{token}/sendMessage"

    @retry(
        retry=retry_if_exception_type(TransientAlertError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _post(self, body: Dict[str, Any]) -> None:
        client = self.http_client or httpx.AsyncClient(timeout=self.settings.alert_timeout_seconds)
        try:
            response = await client.post(self._endpoint(), json=body)
        except httpx.HTTPError as e:
            raise TransientAlertError(f"Alert request failed: {e}") from e
        finally:
            if self.http_client is None:
                await client.aclose()

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientAlertError(f"Alert API returned {response.status_code}")
        if response.status_code >= 400:
            raise AlertDeliveryError(
                f"Alert API rejected message: {response.status_code}", transient=False
            )

    async def send(
        self,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        priority: str = "medium",
    ) -> bool:
        """
        Deliver an alert.

        Returns:
            bool: False when alerts are not configured, True once delivered

        Raises:
            AlertDeliveryError: If delivery failed after retries
        """
        if not self.enabled:
            logger.info("alert_skipped_not_configured", message=message)
            return False

        await self._post(
            {
                "chat_id": self.settings.telegram_chat_id,
                "text": format_alert(message, data, priority),
                "disable_web_page_preview": True,
            }
        )
        logger.info("alert_delivered", message=message, priority=priority)
        return True
