"""Operator escalation for consistency and fatal errors.

Posts a short notice to an incoming-webhook URL (Slack-compatible ``text``
payload). Notification failures are logged and never mask the original
error.
"""

from __future__ import annotations

import logging

import httpx

from futures_mirror.config import settings

logger = logging.getLogger(__name__)


def notify_escalation(unit: str, error: BaseException, webhook_url: str | None = None) -> bool:
    """Send an escalation notice for *error* raised by *unit*.

    Returns True if the webhook accepted the notice.
    """
    url = webhook_url if webhook_url is not None else settings.escalation_webhook_url
    if not url:
        logger.warning("%s failed but no escalation webhook configured: %s", unit, error)
        return False

    payload = {
        "text": (
            f"*futures-mirror {unit} stopped*\n"
            f"Error: {type(error).__name__}: {error}\n"
            f"Contract: {settings.contract_address}"
        ),
    }
    try:
        with httpx.Client(timeout=5.0) as client:
            resp = client.post(url, json=payload)
    except httpx.HTTPError:
        logger.exception("Failed to send escalation notification")
        return False

    if not resp.is_success:
        logger.warning("Escalation webhook returned %d", resp.status_code)
        return False
    return True
