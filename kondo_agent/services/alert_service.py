"""Operator alerts for the reply queue, posted to a Telegram chat.

Counterparties never see these. They exist so that someone notices jobs
that ran out of retries or were left in processing by a crash.
"""

from typing import Optional

import httpx

from kondo_agent.config import settings
from kondo_agent.logging_config import get_logger

logger = get_logger("alert_service")

TELEGRAM_API_URL = "https://api.telegram.org"
ALERT_TIMEOUT_SECONDS = 10

ALERT_BOT_TOKEN = settings.alert_bot_token or None
ALERT_CHAT_ID = settings.alert_chat_id or None

LEVEL_MARKERS = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌"}


def mask_address(address: Optional[str]) -> str:
    """Keep country/area prefix and last digits: 5511*****0000."""
    if not address:
        return "-"
    if len(address) <= 8:
        return "*" * len(address)
    return f"{address[:4]}{'*' * (len(address) - 8)}{address[-4:]}"


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    lines = [f"{LEVEL_MARKERS.get(level, '📢')} *{level}* · kondo-agent", "", message]
    if context:
        lines += ["", "```", *(f"  {key}: {value}" for key, value in context.items()), "```"]
    return "\n".join(lines)


def send_alert(level: str, message: str, context: Optional[dict] = None) -> bool:
    """Post an alert. Returns False when alerts are not configured or delivery failed."""
    if not ALERT_BOT_TOKEN or not ALERT_CHAT_ID:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    try:
        with httpx.Client(timeout=ALERT_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{TELEGRAM_API_URL}/bot{ALERT_BOT_TOKEN}/sendMessage",
                json={
                    "chat_id": ALERT_CHAT_ID,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False

    if response.status_code != 200:
        logger.error(f"Alert rejected by Telegram: status={response.status_code}")
        return False
    return True


def alert_error(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("ERROR", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    return send_alert("WARNING", message, context)
