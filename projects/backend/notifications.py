"""
NoiseMonitor — Alert e-mails via Resend

An alert e-mail carries the plaintext bookkeeping from a NoiseAlert event and
nothing else: readings and aggregates stay encrypted, so the message points
the noise desk at the transaction and at the manager decryption flow.

Environment:
  RESEND_API_KEY          : Resend API key; alerts are skipped when unset.
  ALERT_EMAIL_TO          : Comma-separated noise desk addresses.
  ALERT_EMAIL_FROM        : Sender, defaults to the Resend onboarding address.
  ALGORAND_EXPLORER_TX_URL: Transaction URL prefix for the explorer link.
"""

import html
import logging
import os
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
DEFAULT_SENDER = "NoiseMonitor <onboarding@resend.dev>"
DEFAULT_EXPLORER_TX_URL = "https://lora.algokit.io/testnet/transaction/"


def alert_recipients() -> list[str]:
    return [address.strip() for address in os.getenv("ALERT_EMAIL_TO", "").split(",") if address.strip()]


def compose_alert_email(location_id: int, timestamp: int, total_reports: int, tx_id: str) -> dict:
    """
    Build the subject, plain-text and HTML bodies of an alert.

    Both bodies render the same field list, so the text part is never a
    lossy fallback for the HTML one.
    """
    explorer = os.getenv("ALGORAND_EXPLORER_TX_URL", DEFAULT_EXPLORER_TX_URL)
    fields = [
        ("Location", str(location_id)),
        ("Alert raised", datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")),
        ("Reports so far", str(total_reports)),
        ("Transaction", tx_id),
    ]
    link = f"{explorer}{tx_id}"
    footer = (
        "Readings and aggregates remain encrypted on-chain. Managers granted "
        "access to this location can decrypt the exceedance count and total duration."
    )

    text = "\n".join(
        ["Noise alert", "", *[f"{label}: {value}" for label, value in fields], "", f"View: {link}", "", footer]
    )
    items = "".join(f"<li><b>{html.escape(label)}:</b> {html.escape(value)}</li>" for label, value in fields)
    body = (
        "<h3>Noise alert</h3>"
        f"<ul>{items}</ul>"
        f'<p><a href="{html.escape(link)}">View transaction</a></p>'
        f"<p><small>{html.escape(footer)}</small></p>"
    )
    return {"subject": f"[NoiseMonitor] Alert at location {location_id}", "text": text, "html": body}


async def send_alert_notification(
    location_id: int,
    timestamp: int,
    total_reports: int,
    tx_id: str,
) -> None:
    """Mail a NoiseAlert to the noise desk. Delivery failures are logged, never raised."""
    api_key = os.getenv("RESEND_API_KEY", "")
    recipients = alert_recipients()
    if not api_key or not recipients:
        logger.info("Email skipped: RESEND_API_KEY or ALERT_EMAIL_TO not set")
        return

    message = compose_alert_email(location_id, timestamp, total_reports, tx_id)
    payload = {"from": os.getenv("ALERT_EMAIL_FROM", DEFAULT_SENDER), "to": recipients, **message}
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(RESEND_URL, headers={"Authorization": f"Bearer {api_key}"}, json=payload)
        if resp.status_code >= 400:
            logger.warning(f"Resend API error {resp.status_code}: {resp.text[:200]}")
        else:
            logger.info(f"Alert for location {location_id} mailed to {len(recipients)} recipient(s)")
    except httpx.HTTPError as e:
        logger.warning(f"Failed to send alert notification: {e}")
