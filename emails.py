import html
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from config import Config
from errors import ConfigurationError, EmailError, ValidationError

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
RESEND_AUDIENCES_URL = "https://api.resend.com/audiences"


def render_receipt(order_id: str, tokens: List[Dict[str, Any]], app_url: Optional[str] = None) -> Tuple[str, str]:
    """Build the receipt subject and HTML body, one download link per token"""
    app_url = (app_url or Config.APP_URL).rstrip("/")
    rows = []
    for t in tokens:
        name = html.escape((t.get("product") or {}).get("name") or "Your download")
        link = f"{app_url}/download/{html.escape(t['token'])}"
        rows.append(
            f'<tr><td style="padding:12px 0">{name}</td>'
            f'<td style="padding:12px 0;text-align:right"><a href="{link}">Download Now</a></td></tr>'
        )

    body = (
        "<html><body>"
        "<h1>Thank you for your order!</h1>"
        f"<p>Your order ID is <strong>{html.escape(order_id)}</strong>. "
        "You can access your digital downloads using the links below.</p>"
        f"<table width=\"100%\">{''.join(rows)}</table>"
        f"<p>These links will expire in {Config.TOKEN_TTL_HOURS} hours. "
        f"Each file can be downloaded up to {Config.MAX_DOWNLOADS} times.</p>"
        "<p>If you have any questions, simply reply to this email.</p>"
        f'<p>&copy; {datetime.now().year} <a href="{app_url}">Visit our Store</a></p>'
        "</body></html>"
    )
    return "Your Downloads are Ready!", body


def send_receipt(email: str, order_id: str, tokens: List[Dict[str, Any]]) -> bool:
    """Send the receipt through Resend.

    Returns False without sending when no API key is configured. Raises
    EmailError when the provider rejects or cannot be reached.
    """
    if not Config.RESEND_API_KEY:
        logger.warning("Skipping receipt for order %s: RESEND_API_KEY not set", order_id)
        return False

    subject, body = render_receipt(order_id, tokens)
    try:
        r = requests.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {Config.RESEND_API_KEY}", "Content-Type": "application/json"},
            json={"from": Config.EMAIL_FROM, "to": [email], "subject": subject, "html": body},
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailError(f"Failed to send receipt: {e}")
    if r.status_code not in (200, 201):
        raise EmailError(f"Failed to send receipt: {r.status_code} {r.text[:200]}")

    logger.info("Receipt for order %s sent to %s", order_id, email)
    return True


def subscribe_newsletter(email: str) -> Dict[str, Any]:
    """Add the address to the Resend newsletter audience"""
    if not Config.RESEND_API_KEY:
        raise ConfigurationError("Resend API key is not configured")
    if not Config.RESEND_AUDIENCE_ID:
        raise ConfigurationError("Resend Audience ID is not configured")
    email = (email or "").strip()
    if "@" not in email:
        raise ValidationError("A valid email is required")

    try:
        r = requests.post(
            f"{RESEND_AUDIENCES_URL}/{Config.RESEND_AUDIENCE_ID}/contacts",
            headers={"Authorization": f"Bearer {Config.RESEND_API_KEY}", "Content-Type": "application/json"},
            json={"email": email, "unsubscribed": False},
            timeout=15,
        )
    except requests.RequestException as e:
        logger.error("Newsletter subscription failed: %s", e)
        raise EmailError("Failed to subscribe to newsletter")
    if r.status_code not in (200, 201):
        logger.error("Newsletter subscription rejected: %s %s", r.status_code, r.text[:200])
        raise EmailError("Failed to subscribe to newsletter")

    logger.info("Subscribed %s to the newsletter", email)
    return {"success": True, "data": r.json()}
