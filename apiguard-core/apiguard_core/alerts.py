"""
Alerting
========
Fire-and-forget alert emission for security decisions.

Sinks deliver; the ``Alerter`` wrapper guarantees that a delivery failure is
logged and never propagates into the decision that raised the alert.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import AlertDeliveryError
from .models import AlertLevel

logger = structlog.get_logger(__name__)
_std_logger = logging.getLogger(__name__)


def build_alert(component: str, level: AlertLevel, alert_type: str, message: str) -> Dict[str, Any]:
    """Standard alert payload shared by all sinks."""
    return {
        "component": component,
        "level": AlertLevel(level).value,
        "type": alert_type,
        "message": message,
        "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
    }


class AlertSink(Protocol):
    async def send_alert(self, component: str, level: AlertLevel, alert_type: str, message: str) -> None:
        ...


class LogAlertSink:
    """Emits alerts as structured log records."""

    async def send_alert(self, component: str, level: AlertLevel, alert_type: str, message: str) -> None:
        log = logger.error if AlertLevel(level) == AlertLevel.CRITICAL else logger.warning
        log("security_alert", **build_alert(component, level, alert_type, message))


class MemoryAlertSink:
    """Keeps alerts in a list (dry runs, embedding services that poll)."""

    def __init__(self):
        self.alerts: List[Dict[str, Any]] = []

    async def send_alert(self, component: str, level: AlertLevel, alert_type: str, message: str) -> None:
        self.alerts.append(build_alert(component, level, alert_type, message))


class WebhookAlertSink:
    """
    Posts alerts as JSON to a webhook.

    Transport errors and 5xx answers are retried with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": "apiguard-alerts", "Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> None:
        response = await self.client.post(self.url, json=payload)
        if response.status_code >= 500:
            raise httpx.RemoteProtocolError(f"webhook answered {response.status_code}")
        response.raise_for_status()

    async def send_alert(self, component: str, level: AlertLevel, alert_type: str, message: str) -> None:
        try:
            await self._post(build_alert(component, level, alert_type, message))
        except httpx.HTTPError as e:
            raise AlertDeliveryError(f"Webhook delivery failed: {e}") from e


class Alerter:
    """Fans an alert out to sinks; returns True if at least one sink accepted it."""

    def __init__(self, sinks: Optional[List[AlertSink]] = None):
        self.sinks: List[AlertSink] = list(sinks) if sinks else [LogAlertSink()]

    async def send_alert(self, component: str, level: AlertLevel, alert_type: str, message: str) -> bool:
        delivered = False
        for sink in self.sinks:
            try:
                await sink.send_alert(component, level, alert_type, message)
                delivered = True
            except Exception as e:
                logger.error(
                    "alert_delivery_failed",
                    sink=type(sink).__name__,
                    alert_type=alert_type,
                    error=str(e),
                )
        return delivered

    async def aclose(self) -> None:
        for sink in self.sinks:
            close = getattr(sink, "aclose", None)
            if close is not None:
                await close()
