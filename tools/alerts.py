import os
from typing import Any, Dict, Iterable, List, Optional

import httpx
from loguru import logger

from engine.models import AlertChannel, AlertInstruction, EscalationInstruction
from tools.slack import SlackNotifier


class AlertDispatcher:
    """
    Delivers routing alerts and SLA escalations after the lead decision has
    been committed.

    Owns an httpx client for webhook delivery; call `start()` before use and
    `stop()` on shutdown. Delivery failures are logged and reported as False.
    """

    def __init__(self, slack: Optional[SlackNotifier] = None, timeout: Optional[float] = None,
                 escalation_webhook: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.slack = slack or SlackNotifier()
        self.timeout = timeout if timeout is not None else float(os.getenv("ALERT_WEBHOOK_TIMEOUT", "5"))
        self.escalation_webhook = escalation_webhook or os.getenv("ESCALATION_WEBHOOK_URL")
        self.transport = transport
        self._client: Optional[httpx.Client] = None

    def start(self) -> "AlertDispatcher":
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, transport=self.transport)
        return self

    def stop(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "AlertDispatcher":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()

    def dispatch(self, alert: AlertInstruction, lead: Dict[str, Any]) -> bool:
        payload = alert.to_dict()
        if alert.channel is AlertChannel.SLACK:
            return self.slack.send_lead_alert(lead, payload) is not None
        if alert.channel is AlertChannel.WEBHOOK:
            return self._post_webhook(alert.webhook, {"type": "lead_routed", "alert": payload, "lead": lead})
        logger.info(f"Email alert queued for owner {alert.owner_id or 'unassigned'} on lead {alert.lead_id}")
        return True

    def dispatch_all(self, alerts: Iterable[AlertInstruction], lead: Dict[str, Any]) -> List[bool]:
        return [self.dispatch(alert, lead) for alert in alerts]

    def dispatch_escalation(self, instruction: EscalationInstruction, lead: Optional[Dict[str, Any]] = None) -> bool:
        payload = instruction.to_dict()
        delivered = self.slack.send_escalation(payload, lead) is not None
        if self.escalation_webhook:
            delivered = self._post_webhook(
                self.escalation_webhook, {"type": "sla_escalated", "escalation": payload, "lead": lead}
            ) and delivered
        return delivered

    def _post_webhook(self, url: Optional[str], body: Dict[str, Any]) -> bool:
        if not url:
            logger.warning("Webhook alert without a target url, dropped")
            return False
        self.start()
        try:
            response = self._client.post(url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery to {url} failed: {e}")
            return False
        logger.info(f"Webhook delivered to {url}: {response.status_code}")
        return True
