"""
Turn verified Dodo webhook events into ledger operations.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.credit_plans import PlanResolution, resolve_plan
from app.core.errors import LedgerError
from app.models.payment import (
    PAYMENT_DISPUTED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_UNMATCHED,
    PaymentRecord,
)
from app.models.user import User
from app.schemas.webhooks import DodoPaymentData, DodoWebhookEvent
from app.services import ledger
from app.services.accounts import find_by_email, get_by_external_id

logger = logging.getLogger(__name__)

SUCCEEDED_EVENTS = {"payment.succeeded"}
PENDING_EVENTS = {"payment.processing", "payment.pending"}
FAILED_EVENTS = {"payment.failed", "payment.cancelled"}
ANNOTATION_EVENTS = {
    "payment.refunded": PAYMENT_REFUNDED,
    "refund.succeeded": PAYMENT_REFUNDED,
    "payment.disputed": PAYMENT_DISPUTED,
    "dispute.opened": PAYMENT_DISPUTED,
}
HANDLED_EVENTS = SUCCEEDED_EVENTS | PENDING_EVENTS | FAILED_EVENTS | set(ANNOTATION_EVENTS)

# Older checkouts stored the identity id under these keys
EXTERNAL_ID_KEYS = ("external_id", "clerk_user_id", "clerkId", "userId")


@dataclass
class EventOutcome:
    action: str  # granted | duplicate | recorded | annotated | unmatched | ignored
    user: Optional[User] = None
    resolution: Optional[PlanResolution] = None
    new_balance: Optional[int] = None


def resolve_account(db: Session, data: DodoPaymentData) -> Optional[User]:
    """
    Find the account a payment belongs to, in priority order:
    1. metadata.user_id (set when we create the payment)
    2. the identity id in metadata
    3. the payer's email
    Unknown payers are never given a new account.
    """
    meta = data.metadata or {}
    user = None

    raw_user_id = meta.get("user_id")
    if raw_user_id is not None:
        try:
            user = db.query(User).filter(User.id == int(raw_user_id)).first()
        except (TypeError, ValueError):
            user = None
        if user:
            logger.info("[Dodo webhook] resolved user via metadata.user_id: %s", user.id)
            return user

    for key in EXTERNAL_ID_KEYS:
        value = meta.get(key)
        if value:
            user = get_by_external_id(db, str(value))
            if user:
                logger.info("[Dodo webhook] resolved user via metadata.%s", key)
                return user

    email = data.customer.email
    if email:
        user = find_by_email(db, email)
        if user:
            logger.info("[Dodo webhook] resolved user via email: %s", email)
            return user
    return None


def handle_event(db: Session, event: DodoWebhookEvent, now: Optional[datetime] = None) -> EventOutcome:
    data = event.data
    metadata_json = json.dumps(data.metadata, sort_keys=True) if data.metadata else None
    user = resolve_account(db, data)
    common = dict(
        amount=data.paid_amount,
        currency=data.currency,
        payer_email=data.customer.email,
        payer_name=data.customer.name,
        metadata_json=metadata_json,
        now=now,
    )

    if event.type in SUCCEEDED_EVENTS:
        resolution = resolve_plan(data.metadata, data.paid_amount, data.currency)
        if user is None or resolution is None:
            # Kept as unmatched; apply_unmatched_payments picks it up once the account exists
            logger.warning(
                "[Dodo webhook] payment %s not applied: user=%s plan=%s (metadata=%s, email=%s)",
                data.payment_id,
                user.id if user else None,
                resolution.plan_id if resolution else None,
                data.metadata,
                data.customer.email,
            )
            ledger.record_payment_status(
                db,
                data.payment_id,
                PAYMENT_UNMATCHED,
                user_id=user.id if user else None,
                plan_id=resolution.plan_id if resolution else None,
                **common,
            )
            return EventOutcome("unmatched", user=user, resolution=resolution)

        result = ledger.grant_credits_from_payment(
            db,
            data.payment_id,
            user.id,
            resolution.credits,
            unlimited_days=resolution.unlimited_days,
            plan_id=resolution.plan_id,
            **common,
        )
        return EventOutcome(
            "granted" if result.applied else "duplicate",
            user=user,
            resolution=resolution,
            new_balance=result.new_balance,
        )

    if event.type in PENDING_EVENTS or event.type in FAILED_EVENTS:
        status = PAYMENT_PENDING if event.type in PENDING_EVENTS else PAYMENT_FAILED
        ledger.record_payment_status(
            db, data.payment_id, status, user_id=user.id if user else None, **common
        )
        return EventOutcome("recorded", user=user)

    if event.type in ANNOTATION_EVENTS:
        status = ANNOTATION_EVENTS[event.type]
        ledger.record_payment_status(
            db, data.payment_id, status, user_id=user.id if user else None, **common
        )
        logger.warning(
            "[Dodo webhook] payment %s %s; balances unchanged, reconcile manually",
            data.payment_id, status,
        )
        return EventOutcome("annotated", user=user)

    return EventOutcome("ignored", user=user)


def _belongs_to(payment: PaymentRecord, user: User) -> bool:
    if payment.user_id is not None:
        return payment.user_id == user.id
    if payment.payer_email and user.email and payment.payer_email.strip().lower() == user.email.lower():
        return True
    try:
        meta = json.loads(payment.metadata_json) if payment.metadata_json else {}
    except ValueError:
        meta = {}
    if not isinstance(meta, dict):
        return False
    return any(meta.get(key) and str(meta[key]) == user.external_id for key in EXTERNAL_ID_KEYS)


def apply_unmatched_payments(db: Session, user: User, now: Optional[datetime] = None) -> List[ledger.GrantResult]:
    """
    Grant succeeded payments that arrived before this account existed.

    Called whenever an identity is synced. Matching uses the stored payer
    email and the identity id in the payment metadata. Payments whose plan
    still cannot be resolved stay unmatched for an admin to record.
    """
    candidates = (
        db.query(PaymentRecord)
        .filter(
            PaymentRecord.status == PAYMENT_UNMATCHED,
            (PaymentRecord.user_id == user.id) | (PaymentRecord.user_id.is_(None)),
        )
        .order_by(PaymentRecord.id)
        .all()
    )
    results = []
    for payment in candidates:
        if not _belongs_to(payment, user):
            continue
        try:
            meta = json.loads(payment.metadata_json) if payment.metadata_json else None
        except ValueError:
            meta = None
        resolution = resolve_plan(meta if isinstance(meta, dict) else None, payment.amount, payment.currency)
        if resolution is None:
            logger.warning(
                "[Payments] unmatched payment %s for user %s has no resolvable plan",
                payment.external_payment_id, user.id,
            )
            continue
        try:
            result = ledger.grant_credits_from_payment(
                db,
                payment.external_payment_id,
                user.id,
                resolution.credits,
                unlimited_days=resolution.unlimited_days,
                plan_id=resolution.plan_id,
                now=now,
            )
        except LedgerError as e:
            logger.warning(
                "[Payments] could not apply unmatched payment %s to user %s: %s",
                payment.external_payment_id, user.id, e,
            )
            continue
        if result.applied:
            logger.info(
                "[Payments] applied late payment %s to user %s (+%s credits)",
                payment.external_payment_id, user.id, resolution.credits,
            )
        results.append(result)
    return results
