"""Notification dispatch: chat webhooks, generic webhooks, email and console."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from mcp_review_engine.config_schema import NOTIFICATION_CHANNELS
from mcp_review_engine.models import ToolResult, utc_now
from mcp_review_engine.registry import Tool

logger = logging.getLogger("mcp_review_engine")

SEVERITIES: list[str] = ["info", "warning", "error", "critical"]
SOURCE = "mcp-review-engine"

_SEVERITY_COLORS = {
    "critical": "#ff0000",
    "error": "#ff6600",
    "warning": "#ffcc00",
    "info": "#36a64f",
}
_SEVERITY_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}


def slack_payload(message: str, severity: str, options: dict[str, Any]) -> dict[str, Any]:
    return {
        "channel": options.get("channel_id", "general"),
        "attachments": [
            {
                "color": _SEVERITY_COLORS.get(severity, _SEVERITY_COLORS["info"]),
                "title": options.get("title", "Code Review Update"),
                "text": message,
                "footer": "MCP Review Engine",
                "ts": int(utc_now().timestamp()),
            }
        ],
    }


def teams_payload(message: str, severity: str, options: dict[str, Any]) -> dict[str, Any]:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": options.get("title", "Code Review Update"),
        "themeColor": _SEVERITY_COLORS.get(severity, _SEVERITY_COLORS["info"]).lstrip("#").upper(),
        "sections": [
            {
                "activityTitle": "MCP Review Engine",
                "activitySubtitle": f"Severity: {severity.upper()}",
                "text": message,
            }
        ],
    }


def webhook_payload(message: str, severity: str, options: dict[str, Any]) -> dict[str, Any]:
    extra = {key: value for key, value in options.items() if key != "webhook_url"}
    return {
        "message": message,
        "severity": severity,
        "timestamp": utc_now().isoformat(),
        "source": SOURCE,
        "additional_data": extra,
    }


class NotificationTool(Tool):
    """Sends review notifications.

    slack/teams/webhook POST JSON to ``parameters.webhook_url`` or the
    channel's configured default URL. email and console are written to the
    engine logger; email still requires recipients.
    """

    name = "notification"
    description = (
        "Send notifications about code review results, critical findings, or "
        "important updates to channels like Slack, Teams, webhooks or email."
    )
    input_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "channel": {
                "type": "string",
                "description": "Notification channel to use",
                "enum": sorted(NOTIFICATION_CHANNELS),
            },
            "message": {"type": "string", "description": "Notification message content"},
            "severity": {
                "type": "string",
                "description": "Notification severity level",
                "enum": SEVERITIES,
                "default": "info",
            },
            "parameters": {
                "type": "object",
                "description": "Channel-specific parameters",
                "properties": {
                    "webhook_url": {"type": "string", "description": "Webhook URL"},
                    "channel_id": {"type": "string", "description": "Channel or room ID"},
                    "recipients": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Email recipients",
                    },
                    "title": {"type": "string", "description": "Notification title"},
                    "pull_request_id": {"type": "integer", "description": "Related PR ID"},
                    "findings": {"type": "array", "description": "Review findings to include"},
                },
            },
        },
        "required": ["channel", "message"],
    }

    def __init__(
        self,
        webhooks: dict[str, str] | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.webhooks = dict(webhooks or {})
        self._client = client
        self._timeout = timeout

    async def invoke(self, parameters: dict[str, Any]) -> ToolResult:
        channel = parameters["channel"]
        message = parameters["message"]
        severity = parameters.get("severity") or "info"
        options: dict[str, Any] = parameters.get("parameters") or {}
        metadata: dict[str, Any] = {
            "channel": channel,
            "severity": severity,
            "sent_at": utc_now().isoformat(),
        }

        if channel == "console":
            logger.log(
                _SEVERITY_LOG_LEVELS.get(severity, logging.INFO),
                "notification -> [%s] %s",
                severity.upper(),
                message,
            )
            return ToolResult.ok("Notification logged to console", metadata=metadata)

        if channel == "email":
            recipients = list(options.get("recipients") or [])
            if not recipients:
                return ToolResult.failure("Email recipients required", metadata=metadata)
            title = options.get("title", "Code Review Notification")
            logger.info(
                "notification -> email to %s: %s [%s] %s",
                ", ".join(recipients),
                title,
                severity.upper(),
                message,
            )
            return ToolResult.ok(
                f"Email notification queued for {len(recipients)} recipient(s)",
                metadata={**metadata, "recipients": recipients, "title": title},
            )

        url = options.get("webhook_url") or self.webhooks.get(channel)
        if not url:
            return ToolResult.failure(
                f"Webhook URL required for {channel} notifications", metadata=metadata
            )
        if channel == "slack":
            payload = slack_payload(message, severity, options)
        elif channel == "teams":
            payload = teams_payload(message, severity, options)
        else:
            payload = webhook_payload(message, severity, options)
        status_code = await self._post(url, payload)
        logger.info("notification -> %s delivered (%s)", channel, status_code)
        return ToolResult.ok(
            f"Notification sent via {channel}",
            metadata={**metadata, "webhook_url": url, "status_code": status_code},
        )

    async def _post(self, url: str, payload: dict[str, Any]) -> int:
        if self._client is not None:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            return response.status_code
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
            return response.status_code
