"""Admin notifications and operational alerts, delivered to a Telegram chat."""

import os
from typing import Optional

import httpx

from agent_os.logging_config import get_logger

logger = get_logger("notification_service")

ALERT_BOT_TOKEN = os.environ.get("ALERT_BOT_TOKEN")
ALERT_CHAT_ID = os.environ.get("ALERT_CHAT_ID")

_LEVEL_EMOJI = {"INFO": "ℹ️", "WARN": "⚠️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Send an alert to the ops Telegram chat.

    Args:
        level: INFO, WARN, ERROR, CRITICAL
        message: Alert message
        context: Optional context dict rendered as a code block

    Returns:
        True if Telegram accepted the message
    """
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    text = f"{_LEVEL_EMOJI.get(level, '📢')} *{level}*\n\n{message}"
    if context:
        context_str = "\n".join(f"  {k}: {v}" for k, v in context.items())
        text += f"\n\n```\n{context_str}\n```"

    try:
        with httpx.Client(timeout=10) as client:
            response = client.post(
                f"https://api.telegram.org/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={"chat_id": ALERT_CHAT_ID, "text": text, "parse_mode": "Markdown"},
            )
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
        return False


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("CRITICAL", message, context)


def build_admin_summary(event_type: str, text: Optional[str], contact_name: Optional[str]) -> str:
    if text and text.strip():
        return text.strip()
    return f"Evento: {event_type} para {contact_name or 'candidato'}"


def send_admin_notification(
    workspace_id: str,
    event_type: str,
    severity: str,
    text: Optional[str],
    conversation_id: Optional[str] = None,
    contact_name: Optional[str] = None,
) -> dict:
    """Notify workspace admins about an agent-reported event."""
    summary = build_admin_summary(event_type, text, contact_name)
    delivered = send_alert(
        severity,
        summary,
        {"workspace": workspace_id, "event": event_type, "conversation": conversation_id or "-"},
    )
    logger.info(
        "Admin notification",
        extra={"context": {"workspace_id": workspace_id, "event_type": event_type, "delivered": delivered}},
    )
    return {"delivered": delivered, "summary": summary}
