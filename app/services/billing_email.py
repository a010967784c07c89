"""
Send credit-purchase receipt emails.
Uses Resend if RESEND_API_KEY is set; otherwise no-op so webhooks never fail.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import resend

logger = logging.getLogger(__name__)


def send_credit_receipt_email(
    api_key: str,
    from_email: str,
    app_name: str,
    to_email: Optional[str],
    amount: int,
    currency: str,
    credits: int,
    unlimited_days: int = 0,
    paid_at: Optional[datetime] = None,
) -> bool:
    """
    Send a receipt after a successful credit purchase.
    Returns True if sent, False if skipped or failed. Never raises.
    """
    if not api_key or not to_email:
        return False
    resend.api_key = api_key

    # Dodo sends amounts in minor units (e.g. cents)
    amount_str = f"{(Decimal(amount) / 100).quantize(Decimal('0.01'))}"
    currency_display = currency.upper() if currency else "USD"
    date_str = paid_at.strftime("%B %d, %Y") if paid_at else ""

    granted = []
    if credits:
        granted.append(f"{credits} credits")
    if unlimited_days:
        granted.append(f"{unlimited_days} days of unlimited posting")

    subject = f"Your {app_name} payment receipt – {currency_display} {amount_str}"
    html = f"""
    <p>Hi,</p>
    <p>Your payment has been received.</p>
    <p><strong>Amount:</strong> {currency_display} {amount_str}</p>
    <p><strong>Added to your account:</strong> {" and ".join(granted)}</p>
    <p><strong>Date:</strong> {date_str}</p>
    <p>Thank you for using {app_name}.</p>
    """

    try:
        resend.Emails.send({
            "from": from_email,
            "to": [to_email],
            "subject": subject,
            "html": html.strip(),
        })
        logger.info("[billing_email] Receipt email sent to %s", to_email)
        return True
    except Exception as e:
        logger.warning("[billing_email] Failed to send receipt to %s: %s", to_email, e)
        return False
