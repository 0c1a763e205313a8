import os
from typing import Any, Dict, Optional

from loguru import logger
from slack_sdk.errors import SlackClientError
from slack_sdk.web import WebClient

BAND_EMOJI = {"HIGH": ":rocket:", "MEDIUM": ":white_check_mark:", "LOW": ":email:"}


class SlackNotifier:
    """Slack integration for routing alerts and SLA escalations."""

    def __init__(self, token: Optional[str] = None, default_channel: Optional[str] = None):
        self.token = token or os.getenv("SLACK_BOT_TOKEN")
        self.default_channel = default_channel or os.getenv("SLACK_DEFAULT_CHANNEL", "#sales-leads")
        self._client: Optional[WebClient] = None

        if not self.token:
            logger.warning("No Slack token provided, using mock mode")

    @property
    def client(self) -> WebClient:
        if self._client is None:
            self._client = WebClient(token=self.token)
        return self._client

    def send_lead_alert(self, lead: Dict[str, Any], alert: Dict[str, Any], channel: Optional[str] = None) -> Optional[str]:
        """
        Send a routing alert for a newly assigned lead.

        Args:
            lead: Lead record (`Lead.to_dict()` shape)
            alert: Alert instruction (`AlertInstruction.to_dict()` shape)
            channel: Slack channel (optional, uses default if not specified)

        Returns:
            Slack message timestamp or None if failed
        """
        return self._post(self._build_lead_message(lead, alert), channel, "lead alert")

    def send_escalation(self, instruction: Dict[str, Any], lead: Optional[Dict[str, Any]] = None,
                        channel: Optional[str] = None) -> Optional[str]:
        """Send an SLA escalation notice (notify_manager, escalate_to_director, ...)."""
        return self._post(self._build_escalation_message(instruction, lead or {}), channel, "escalation")

    def _post(self, message: Dict[str, Any], channel: Optional[str], kind: str) -> Optional[str]:
        if not self.token:
            logger.info(f"Mock mode: would send Slack {kind}")
            return "mock_timestamp_123"

        target_channel = channel or self.default_channel
        try:
            response = self.client.chat_postMessage(
                channel=target_channel,
                text=message["text"],
                blocks=message["blocks"],
            )
        except (SlackClientError, OSError) as e:
            logger.error(f"Slack {kind} failed: {e}")
            return None

        message_ts = response["ts"]
        logger.info(f"Slack {kind} sent to {target_channel}: {message_ts}")
        return message_ts

    def _build_lead_message(self, lead: Dict[str, Any], alert: Dict[str, Any]) -> Dict[str, Any]:
        band = lead.get("scoreBand", "LOW")
        emoji = BAND_EMOJI.get(band, ":email:")
        who = lead.get("name") or lead.get("email") or "Unknown"
        owner = alert.get("ownerId") or "Unassigned"

        text = f"{emoji} New {band} lead: {who} from {lead.get('company') or 'Unknown'}"
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"{emoji} New Lead Assigned"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Name:*\n{who}"},
                    {"type": "mrkdwn", "text": f"*Company:*\n{lead.get('company') or 'Unknown'}"},
                    {"type": "mrkdwn", "text": f"*Score:*\n{lead.get('score', 0)}/100 ({band})"},
                    {"type": "mrkdwn", "text": f"*Priority:*\n{alert.get('priority') or '-'}"},
                ],
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Source:*\n{lead.get('source') or 'Unknown'}"},
                    {"type": "mrkdwn", "text": f"*Pool:*\n{alert.get('pool') or '-'}"},
                ],
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Assigned to:* {owner}"},
            },
        ]
        tags = lead.get("tags") or []
        if tags:
            blocks.append({
                "type": "context",
                "elements": [{"type": "mrkdwn", "text": "Tags: " + ", ".join(tags[:8])}],
            })
        return {"text": text, "blocks": blocks}

    def _build_escalation_message(self, instruction: Dict[str, Any], lead: Dict[str, Any]) -> Dict[str, Any]:
        action = instruction.get("action", "notify_manager")
        who = lead.get("name") or lead.get("email") or instruction.get("leadId")
        text = (
            f":rotating_light: SLA {action.replace('_', ' ')}: lead {who} has waited "
            f"{instruction.get('minutes')} min without a response"
        )
        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": ":rotating_light: SLA Escalation"},
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Lead:*\n{who}"},
                    {"type": "mrkdwn", "text": f"*Owner:*\n{instruction.get('ownerId') or 'Unassigned'}"},
                    {"type": "mrkdwn", "text": f"*Level:*\n{instruction.get('level')} ({action})"},
                    {"type": "mrkdwn", "text": f"*Waiting:*\n{instruction.get('minutes')} min"},
                ],
            },
        ]
        return {"text": text, "blocks": blocks}
