"""
Webhooks from Dodo Payments and from the identity provider.

Both are signed with the Standard Webhooks scheme. The signature is checked
against the raw body before anything is parsed, and a 2xx is only returned
once the resulting changes are committed, so the sender retries otherwise.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.dependencies import get_app_settings
from app.core.config import Settings
from app.db.session import get_db
from app.schemas.webhooks import DodoWebhookEvent, IdentityWebhookEvent
from app.services import accounts, payment_events
from app.services.billing_email import send_credit_receipt_email
from app.utils.time import utcnow
from app.utils.webhook_signature import verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter()


def _load_json(payload: bytes) -> dict:
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    return data


@router.post("/dodo")
async def dodo_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """
    Dodo Payments webhook. Register this URL in the Dodo dashboard:
    https://your-backend.com/webhooks/dodo
    """
    payload = await request.body()
    verify_webhook(
        settings.DODO_WEBHOOK_SECRET,
        payload,
        request.headers.get("webhook-id"),
        request.headers.get("webhook-timestamp"),
        request.headers.get("webhook-signature"),
    )

    data = _load_json(payload)
    event_type = data.get("type")
    if event_type not in payment_events.HANDLED_EVENTS:
        logger.info("[Dodo webhook] ignoring event type=%s", event_type)
        return {"status": "ignored"}

    try:
        event = DodoWebhookEvent.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("[Dodo webhook] malformed %s event: %s", event_type, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payment event")

    logger.info("[Dodo webhook] type=%s payment_id=%s", event.type, event.data.payment_id)
    try:
        outcome = payment_events.handle_event(db, event)
    except SQLAlchemyError as e:
        logger.exception("[Dodo webhook] Error saving payment %s: %s", event.data.payment_id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not record payment",
        )

    if outcome.action == "unmatched":
        # Recorded and committed; a non-2xx keeps the provider retrying until
        # the account exists or an admin records the payment
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Payment recorded but not yet matched to an account",
        )

    if outcome.action == "granted" and outcome.user is not None:
        send_credit_receipt_email(
            api_key=settings.RESEND_API_KEY,
            from_email=settings.BILLING_FROM_EMAIL,
            app_name=settings.APP_NAME,
            to_email=event.data.customer.email or outcome.user.email,
            amount=event.data.paid_amount or 0,
            currency=event.data.currency or "USD",
            credits=outcome.resolution.credits,
            unlimited_days=outcome.resolution.unlimited_days,
            paid_at=utcnow(),
        )

    return {"status": "success", "action": outcome.action}


@router.post("/identity")
async def identity_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Profile events from the identity provider (svix-* or webhook-* headers)."""
    payload = await request.body()
    headers = request.headers
    verify_webhook(
        settings.IDENTITY_WEBHOOK_SECRET,
        payload,
        headers.get("svix-id") or headers.get("webhook-id"),
        headers.get("svix-timestamp") or headers.get("webhook-timestamp"),
        headers.get("svix-signature") or headers.get("webhook-signature"),
    )

    data = _load_json(payload)
    event_type = data.get("type")
    if event_type not in ("user.created", "user.updated", "user.deleted"):
        logger.info("[Identity webhook] ignoring event type=%s", event_type)
        return {"status": "ignored"}

    try:
        event = IdentityWebhookEvent.model_validate(data)
    except PydanticValidationError as e:
        logger.warning("[Identity webhook] malformed %s event: %s", event_type, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed identity event")

    try:
        if event.type == "user.deleted":
            user = accounts.delete_identity(db, event.data.id)
            action = "deleted" if user else "unknown"
        else:
            if not event.data.primary_email:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No email address on user")
            user = accounts.upsert_identity(db, event.data.id, event.data.primary_email, event.data.full_name)
            payment_events.apply_unmatched_payments(db, user)
            action = "synced"
    except SQLAlchemyError as e:
        logger.exception("[Identity webhook] Error saving identity %s: %s", event.data.id, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not record identity change",
        )

    logger.info("[Identity webhook] %s %s -> %s", event.type, event.data.id, action)
    return {"status": "success", "action": action}
