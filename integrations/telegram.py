"""
Telegram bot integration for operator alerts.

Sends Markdown messages about failed sync runs and error streaks to the
configured chat. Alerts never affect the run that triggered them.
"""

from datetime import datetime, timezone
from typing import Optional

import requests
import structlog

from config import settings
from exceptions import TelegramError
from models.sync import SyncMetrics

logger = structlog.get_logger(__name__)


SEVERITY_EMOJIS = {
    "CRITICAL": "🚨",
    "WARNING": "⚠️",
    "INFO": "ℹ️",
}


def get_telegram_config() -> tuple[Optional[str], Optional[str]]:
    """
    Get Telegram configuration from settings.

    Returns:
        tuple: (bot_token, chat_id)
    """
    bot_token = settings.telegram_bot_token
    chat_id = settings.telegram_chat_id

    if not bot_token or not chat_id:
        logger.warning(
            "telegram_not_configured",
            has_token=bool(bot_token),
            has_chat_id=bool(chat_id)
        )

    return bot_token, chat_id


def _escape(text: str) -> str:
    """Escape Telegram legacy-Markdown control characters."""
    for char in ("_", "*", "`", "["):
        text = text.replace(char, f"\\{char}")
    return text


def format_sync_failed_message(run_id: str, fatal_error: str, metrics: SyncMetrics) -> str:
    """
    Format a failed-run alert.

    Args:
        run_id: Sync run UUID
        fatal_error: Message stored on the run
        metrics: Counters at the time of failure

    Returns:
        Formatted message string
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        f"{SEVERITY_EMOJIS['CRITICAL']} CRITICAL",
        "",
        "🚢 *Cruise sync failed*",
        "",
        _escape(fatal_error),
        "",
        f"Run: `{run_id}`",
        f"Files processed: {metrics.files_processed} / {metrics.files_found}",
        f"Files skipped: {metrics.files_skipped}",
        "",
        f"🕐 {timestamp}",
    ]
    return "\n".join(lines)


def format_error_streak_message(run_id: str, consecutive: int, last_error: str) -> str:
    """Format an alert for a streak of consecutive record failures."""
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    lines = [
        f"{SEVERITY_EMOJIS['WARNING']} WARNING",
        "",
        "🚢 *Cruise sync error streak*",
        "",
        f"{consecutive} consecutive files failed. The run continues.",
        "",
        f"Last error: {_escape(last_error[:300])}",
        f"Run: `{run_id}`",
        "",
        f"🕐 {timestamp}",
    ]
    return "\n".join(lines)


def send_message(message: str, parse_mode: str = "Markdown") -> bool:
    """
    Send message to Telegram.

    Args:
        message: Message text to send
        parse_mode: Telegram parse mode (Markdown or HTML)

    Returns:
        True if sent successfully, False if Telegram is not configured

    Raises:
        TelegramError: If send fails
    """
    bot_token, chat_id = get_telegram_config()

    if not bot_token or not chat_id:
        logger.warning("telegram_not_configured_skipping_send")
        return False

    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"

    payload = {
        "chat_id": chat_id,
        "text": message,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    }

    try:
        logger.info("sending_telegram_message", chat_id=chat_id)

        response = requests.post(url, json=payload, timeout=10)
        response.raise_for_status()

        result = response.json()

        if not result.get("ok"):
            error_msg = result.get("description", "Unknown error")
            logger.error("telegram_api_error", error=error_msg)
            raise TelegramError(f"Telegram API error: {error_msg}")

        logger.info("telegram_message_sent", message_id=result.get("result", {}).get("message_id"))
        return True

    except requests.exceptions.RequestException as e:
        logger.error("telegram_request_failed", error=str(e))
        raise TelegramError(f"Failed to send Telegram message: {str(e)}")


def notify_operator(message: str) -> bool:
    """
    Send an operator alert without ever raising.

    Returns:
        True if the alert was delivered
    """
    try:
        return send_message(message)
    except TelegramError as e:
        logger.warning("operator_alert_not_delivered", error=e.message)
        return False
