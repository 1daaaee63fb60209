from __future__ import annotations
import logging
from typing import Any
from prometheus_client import Counter
from slack_sdk.webhook import WebhookClient
from erp_sync.infrastructure.structured_logging import log_event

logger = logging.getLogger(__name__)

ALERTS_SENT = Counter('erp_sync_alerts_total', 'Alerts emitted', ['type', 'delivered'])


class AlertService:
    """Structured-log every alert, then forward to Slack when a webhook is configured.

    ``send`` never raises: a broken sink must not stop the caller.
    """

    def __init__(self, webhook_url: str | None = None, timeout: float = 5.0, client: Any = None):
        self.webhook_url = webhook_url
        if client is None and webhook_url:
            client = WebhookClient(webhook_url, timeout=int(timeout))
        self._client = client

    def send(self, alert_type: str, message: str, context: dict | None = None) -> bool:
        context = context or {}
        log_event(logging.WARNING, "alert", alert_type=alert_type, message=message, context=context)
        if self._client is None:
            ALERTS_SENT.labels(type=alert_type, delivered="false").inc()
            return False
        text = f":rotating_light: *{alert_type}*: {message}"
        if context:
            text += "\n" + "\n".join(f"• {k}: {v}" for k, v in context.items())
        try:
            resp = self._client.send(text=text)
            if resp.status_code >= 400:
                raise RuntimeError(f"Slack webhook returned {resp.status_code}: {resp.body}")
        except Exception as e:
            logger.error(f"Alert delivery failed ({alert_type}): {e}")
            ALERTS_SENT.labels(type=alert_type, delivered="false").inc()
            return False
        ALERTS_SENT.labels(type=alert_type, delivered="true").inc()
        return True
