"""
Standard Webhooks signature verification.

Both Dodo Payments and the identity provider sign deliveries this way:

    signed = f"{msg_id}.{timestamp}.{raw_body}"
    signature = base64(HMAC-SHA256(key, signed))

The key is the base64 part of a "whsec_..." secret. The signature header may
hold several space-separated "v1,<sig>" entries (during secret rotation);
any one matching is enough.
"""
import base64
import binascii
import hashlib
import hmac
import time
from typing import Optional

from app.core.errors import InvalidWebhookSignature

# Deliveries older (or newer) than this are rejected as replays
TIMESTAMP_TOLERANCE_SECONDS = 5 * 60


def _secret_key(secret: str) -> bytes:
    secret = secret.strip()
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret.split("_", 1)[1])
        except (binascii.Error, ValueError):
            raise InvalidWebhookSignature("Webhook secret is not valid base64")
    return secret.encode()


def sign_payload(secret: str, msg_id: str, timestamp: str, payload: bytes) -> str:
    """Build the "v1,<b64>" header value for a payload. Used by tests and tooling."""
    signed = f"{msg_id}.{timestamp}.".encode() + payload
    digest = hmac.new(_secret_key(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode()


def verify_webhook(
    secret: str,
    payload: bytes,
    msg_id: Optional[str],
    timestamp: Optional[str],
    signature_header: Optional[str],
    now: Optional[float] = None,
    tolerance: int = TIMESTAMP_TOLERANCE_SECONDS,
) -> None:
    """Raise InvalidWebhookSignature unless the delivery is authentic and fresh."""
    if not secret:
        raise InvalidWebhookSignature("Webhook secret is not configured")
    if not msg_id or not timestamp or not signature_header:
        raise InvalidWebhookSignature("Missing webhook signature headers")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise InvalidWebhookSignature("Invalid webhook timestamp")
    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance:
        raise InvalidWebhookSignature("Webhook timestamp outside the allowed window")

    expected = sign_payload(secret, msg_id, timestamp, payload).split(",", 1)[1]
    for candidate in signature_header.split():
        version, _, value = candidate.partition(",")
        if version != "v1" or not value:
            continue
        if hmac.compare_digest(value.strip(), expected):
            return
    raise InvalidWebhookSignature()
