"""
Dodo Payments (Merchant of Record) integration.
Creates one-time payment links for credit plans and reports payment status.
Credits are only ever granted by the webhook (see webhooks.py).
"""
import json
import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_app_settings, get_dodo_client
from app.core.config import Settings
from app.core.credit_plans import DEFAULT_CHECKOUT_PLAN, PLAN_ALIASES, get_plan, resolve_plan
from app.core.errors import AccountNotFound, ValidationError
from app.db.session import get_db
from app.dependencies.auth import get_current_user, require_admin
from app.models.payment import PAYMENT_PENDING, PAYMENT_SUCCEEDED, PaymentRecord
from app.models.user import User
from app.schemas.payments import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    PaymentHistoryResponse,
    PaymentRecordResponse,
    RecordPaymentRequest,
    RecordPaymentResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from app.services import accounts, ledger
from app.services.dodo_client import DodoAPIError, DodoClient

logger = logging.getLogger(__name__)

router = APIRouter()
# Older frontends call POST /api/verify-payment
legacy_router = APIRouter()

BILLING_FIELDS = ("street", "city", "state", "zipcode", "country")


@router.post("/create", response_model=CreatePaymentResponse)
async def create_payment(
    payload: CreatePaymentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
    dodo: DodoClient = Depends(get_dodo_client),
):
    """
    Create a Dodo payment link for a credit plan.
    Returns the hosted payment link to redirect the user to.
    """
    missing = [f for f in BILLING_FIELDS if not (getattr(payload.billing, f) or "").strip()]
    if missing:
        raise ValidationError(f"Missing billing information: {', '.join(missing)}")

    customer_name = (payload.customer.name or user.full_name or "").strip()
    customer_email = payload.customer.email or user.email
    if not customer_name:
        raise ValidationError("Customer name is required")
    if not customer_email:
        raise ValidationError("Customer email is required")

    plan_id = payload.plan_id or DEFAULT_CHECKOUT_PLAN
    plan_id = PLAN_ALIASES.get(plan_id, plan_id)
    plan = get_plan(plan_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {payload.plan_id}")

    if not settings.dodo_configured:
        logger.warning("[Dodo] Configuration missing; aborting payment creation.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=settings.dodo_missing_config_message(),
        )

    billing = {f: getattr(payload.billing, f).strip() for f in BILLING_FIELDS}
    customer = {"email": customer_email, "name": customer_name}
    if payload.customer.phone_number:
        customer["phone_number"] = payload.customer.phone_number
    metadata = {
        "user_id": str(user.id),
        "external_id": user.external_id,
        "plan_id": plan_id,
        "credits": str(plan["credits"]),
    }

    try:
        data = await dodo.create_payment(
            billing=billing,
            customer=customer,
            product_id=settings.DODO_PRODUCT_ID,
            return_url=f"{settings.FRONTEND_URL}/success",
            metadata=metadata,
            amount=plan["amount_cents"],
        )
    except httpx.TimeoutException as e:
        logger.error("[Dodo] Timeout error when calling Dodo: %s", e)
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail="Dodo API timeout")
    except httpx.RequestError as e:
        logger.error("[Dodo] Request error when calling Dodo: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Dodo request failed: {e}")
    except DodoAPIError as e:
        # Surface Dodo's status code directly so it's not always 502.
        code = e.status_code if 400 <= e.status_code < 600 else status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=f"Dodo API error: {e.detail}")

    payment_link = data.get("payment_link")
    if not payment_link:
        logger.error("[Dodo] Missing payment_link in response: %s", data)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Dodo did not return a payment link",
        )

    payment_id = data.get("payment_id")
    total_amount = data.get("total_amount")
    if payment_id:
        ledger.record_payment_status(
            db,
            payment_id,
            PAYMENT_PENDING,
            user_id=user.id,
            amount=total_amount if total_amount is not None else plan["amount_cents"],
            currency=data.get("currency"),
            payer_email=customer_email,
            payer_name=customer_name,
            plan_id=plan_id,
            metadata_json=json.dumps(metadata, sort_keys=True),
        )
    logger.info("[Dodo] Payment %s created for user %s (plan=%s)", payment_id, user.id, plan_id)
    return {
        "payment_link": payment_link,
        "payment_id": payment_id,
        "total_amount": total_amount,
        "plan_id": plan_id,
    }


@router.post("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    payload: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Report whether a payment has been applied. Never grants anything."""
    record = (
        db.query(PaymentRecord)
        .filter(
            PaymentRecord.external_payment_id == payload.payment_id,
            PaymentRecord.user_id == user.id,
        )
        .first()
    )
    if record is None:
        return {
            "already_processed": False,
            "status": "not_found",
            "message": "Payment not received yet. Credits are added as soon as the provider confirms it.",
        }
    if record.status == PAYMENT_SUCCEEDED:
        return {
            "already_processed": True,
            "status": record.status,
            "message": f"Payment processed. {record.credits_granted} credits were added to your account.",
        }
    return {
        "already_processed": False,
        "status": record.status,
        "message": f"Payment is {record.status}.",
    }


legacy_router.add_api_route(
    "/verify-payment",
    verify_payment,
    methods=["POST"],
    response_model=VerifyPaymentResponse,
)


@router.get("/history", response_model=PaymentHistoryResponse)
def payment_history(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    records = (
        db.query(PaymentRecord)
        .filter(PaymentRecord.user_id == user.id)
        .order_by(PaymentRecord.created_at.desc(), PaymentRecord.id.desc())
        .all()
    )
    return {"payments": records}


@router.get("/details/{payment_id}")
async def payment_details(
    payment_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    dodo: DodoClient = Depends(get_dodo_client),
):
    """The caller's payment record plus a best-effort live lookup from Dodo."""
    record = (
        db.query(PaymentRecord)
        .filter(
            PaymentRecord.external_payment_id == payment_id,
            PaymentRecord.user_id == user.id,
        )
        .first()
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    live = None
    try:
        live = await dodo.get_payment(payment_id)
    except (DodoAPIError, httpx.HTTPError) as e:
        logger.warning("[Dodo] Live lookup for %s failed: %s", payment_id, e)

    return {
        "payment": PaymentRecordResponse.model_validate(record).model_dump(mode="json"),
        "provider": live,
    }


@router.post("/record", response_model=RecordPaymentResponse)
def record_payment(
    payload: RecordPaymentRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """
    Admin-only: apply a payment by hand, e.g. one left unmatched because the
    payer had no account yet. Goes through the same exactly-once grant as the
    webhook, so recording a payment twice never grants twice.
    """
    existing = (
        db.query(PaymentRecord)
        .filter(PaymentRecord.external_payment_id == payload.payment_id)
        .first()
    )

    if payload.user_id is not None:
        user = db.query(User).filter(User.id == payload.user_id).first()
    elif payload.email:
        user = accounts.find_by_email(db, payload.email)
    elif existing is not None and existing.user_id is not None:
        user = existing.user
    elif existing is not None and existing.payer_email:
        user = accounts.find_by_email(db, existing.payer_email)
    else:
        raise ValidationError("user_id or email is required")
    if user is None:
        raise AccountNotFound()

    metadata = {}
    if existing is not None and existing.metadata_json:
        try:
            stored = json.loads(existing.metadata_json)
        except ValueError:
            stored = None
        if isinstance(stored, dict):
            metadata.update(stored)
    if payload.plan_id:
        metadata["plan_id"] = payload.plan_id
    if payload.credits is not None:
        for key in ("plan_id", "plan", "planType"):
            metadata.pop(key, None)
        metadata["credits"] = str(payload.credits)
    amount = payload.amount if payload.amount is not None else (existing.amount if existing else None)
    currency = payload.currency or (existing.currency if existing else None)

    resolution = resolve_plan(metadata, amount, currency)
    if resolution is None:
        raise ValidationError("Could not work out what this payment buys; pass plan_id or credits")

    metadata.update({"manual_entry": True, "recorded_by": str(admin.id)})
    result = ledger.grant_credits_from_payment(
        db,
        payload.payment_id,
        user.id,
        resolution.credits,
        unlimited_days=resolution.unlimited_days,
        amount=amount,
        currency=currency,
        payer_name=payload.payer_name,
        payer_email=payload.email,
        plan_id=resolution.plan_id,
        metadata_json=json.dumps(metadata, sort_keys=True),
    )
    record = db.query(PaymentRecord).filter(PaymentRecord.external_payment_id == payload.payment_id).one()
    logger.info(
        "[Payments] admin %s recorded payment %s for user %s (applied=%s)",
        admin.id, payload.payment_id, user.id, result.applied,
    )
    return {
        "applied": result.applied,
        "status": record.status,
        "payment_id": payload.payment_id,
        "user_id": user.id,
        "credits_granted": record.credits_granted,
        "new_balance": result.new_balance,
    }
