"""
Credit ledger.

Every change to an account's post allocations or AI-tool credit balance goes
through this module. There are two separate mechanisms:

* Post allocations (free / purchased / unlimited). These are counted from
  usage records inside the current calendar month (UTC). A post never
  subtracts from the stored credit balance.
* AI-tool credits. users.purchased_credits is a real balance that each tool
  use decrements with a single conditional UPDATE, so it can never go below zero.

Writes that read-then-modify the account row are protected by the row's
version column: a concurrent writer makes the flush fail with StaleDataError
and the operation re-reads and retries a bounded number of times.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.credit_plans import FREE_POSTS_PER_MONTH
from app.core.errors import (
    AccountNotFound,
    InsufficientCredits,
    LedgerConflict,
    NoAllocationRemaining,
    ValidationError,
)
from app.models.payment import (
    OPEN_STATUSES,
    PAYMENT_DISPUTED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    PAYMENT_UNMATCHED,
    PaymentRecord,
)
from app.models.usage_record import (
    ALLOCATION_FREE,
    ALLOCATION_KINDS,
    ALLOCATION_PURCHASED,
    ALLOCATION_UNLIMITED,
    RECORD_AI_TOOL,
    RECORD_POST,
    UsageRecord,
)
from app.models.user import User
from app.utils.time import start_of_month, utcnow

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class _VersionConflict(Exception):
    pass


@dataclass
class AllocationDecision:
    allowed: bool
    allocation_kind: Optional[str]
    remaining: Optional[int]  # None means unlimited
    reason: str
    free_remaining: int = 0
    purchased_remaining: int = 0


@dataclass
class SpendResult:
    new_balance: int
    charged: int
    usage_record_id: int


@dataclass
class GrantResult:
    applied: bool
    new_balance: int
    payment_record_id: Optional[int] = None


def _get_user(db: Session, user_id: int, for_update: bool = False) -> User:
    query = db.query(User).filter(User.id == user_id)
    if for_update:
        query = query.with_for_update()
    user = query.first()
    if not user:
        raise AccountNotFound()
    return user


def current_balance(db: Session, user_id: int) -> int:
    balance = db.query(User.purchased_credits).filter(User.id == user_id).scalar()
    if balance is None:
        raise AccountNotFound()
    return balance


def _post_counts(db: Session, user_id: int, since: datetime) -> Dict[str, int]:
    rows = (
        db.query(UsageRecord.allocation_kind, func.count(UsageRecord.id))
        .filter(
            UsageRecord.user_id == user_id,
            UsageRecord.record_type == RECORD_POST,
            UsageRecord.created_at >= since,
        )
        .group_by(UsageRecord.allocation_kind)
        .all()
    )
    return {kind: count for kind, count in rows}


def _free_used_this_month(db: Session, user: User, counts: Dict[str, int]) -> int:
    used = counts.get(ALLOCATION_FREE, 0)
    if used == 0 and (user.free_posts_used or 0) > 0:
        # Accounts from before usage records existed only carry the counter
        has_free_record = (
            db.query(UsageRecord.id)
            .filter(
                UsageRecord.user_id == user.id,
                UsageRecord.record_type == RECORD_POST,
                UsageRecord.allocation_kind == ALLOCATION_FREE,
            )
            .first()
        )
        if has_free_record is None:
            return user.free_posts_used
    return used


def _evaluate(db: Session, user: User, now: datetime) -> AllocationDecision:
    if user.is_admin:
        return AllocationDecision(True, ALLOCATION_UNLIMITED, None, "admin_unlimited")
    if user.has_unlimited_window(now):
        return AllocationDecision(True, ALLOCATION_UNLIMITED, None, "unlimited")

    counts = _post_counts(db, user.id, start_of_month(now))
    free_remaining = max(0, FREE_POSTS_PER_MONTH - _free_used_this_month(db, user, counts))
    purchased_remaining = max(0, (user.purchased_credits or 0) - counts.get(ALLOCATION_PURCHASED, 0))

    if free_remaining > 0:
        return AllocationDecision(
            True, ALLOCATION_FREE, free_remaining, "free", free_remaining, purchased_remaining
        )
    if purchased_remaining > 0:
        return AllocationDecision(
            True, ALLOCATION_PURCHASED, purchased_remaining, "purchased", 0, purchased_remaining
        )
    return AllocationDecision(False, None, 0, "no_allocation_remaining", 0, 0)


def can_consume(db: Session, user_id: int, now: Optional[datetime] = None) -> AllocationDecision:
    """Decide whether the account may create a post now, and from which allocation."""
    now = now or utcnow()
    return _evaluate(db, _get_user(db, user_id), now)


def usage_summary(db: Session, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Allocation decision plus this month's post counts, for the limits endpoint."""
    now = now or utcnow()
    user = _get_user(db, user_id)
    decision = _evaluate(db, user, now)
    counts = _post_counts(db, user.id, start_of_month(now))
    return {
        "decision": decision,
        "posts_this_month": sum(counts.values()),
        "free_posts_used": _free_used_this_month(db, user, counts),
        "purchased_posts_used": counts.get(ALLOCATION_PURCHASED, 0),
        "purchased_credits": user.purchased_credits or 0,
        "unlimited_until": user.unlimited_until if user.has_unlimited_window(now) else None,
        "is_admin": bool(user.is_admin),
    }


def record_usage(
    db: Session,
    user_id: int,
    allocation_kind: Optional[str] = None,
    title: Optional[str] = None,
    body: Optional[str] = None,
    subreddit: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UsageRecord:
    """
    Create a post usage record against the allocation the policy picks right now.

    When allocation_kind is passed it must match what the policy answers at
    write time; a stale answer (another post got there first) is refused with
    NoAllocationRemaining instead of being recorded against the wrong allocation.
    """
    if allocation_kind is not None and allocation_kind not in ALLOCATION_KINDS:
        raise ValidationError(f"Unknown allocation kind: {allocation_kind}")
    now = now or utcnow()

    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        try:
            user = _get_user(db, user_id, for_update=True)
            decision = _evaluate(db, user, now)
            if not decision.allowed:
                raise NoAllocationRemaining()
            if allocation_kind is not None and allocation_kind != decision.allocation_kind:
                logger.info(
                    "[Ledger] user=%s asked for %s allocation but policy now says %s",
                    user_id, allocation_kind, decision.allocation_kind,
                )
                raise NoAllocationRemaining()

            if decision.allocation_kind == ALLOCATION_FREE:
                user.free_posts_used = (user.free_posts_used or 0) + 1
            # Touch the row so the version check covers every allocation kind
            user.updated_at = now

            record = UsageRecord(
                user_id=user.id,
                allocation_kind=decision.allocation_kind,
                record_type=RECORD_POST,
                title=title,
                body=body,
                subreddit=subreddit,
                status="pending",
                credits_spent=0,
                tools_used=[],
                created_at=now,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            logger.info(
                "[Ledger] user=%s post recorded id=%s allocation=%s",
                user_id, record.id, record.allocation_kind,
            )
            return record
        except StaleDataError:
            db.rollback()
            logger.info("[Ledger] user=%s concurrent post write, retry %s", user_id, attempt)
        except Exception:
            db.rollback()
            raise

    raise LedgerConflict()


def _tool_record(
    db: Session,
    user_id: int,
    usage_record_id: Optional[int],
    for_update: bool = False,
) -> Optional[UsageRecord]:
    if usage_record_id is None:
        return None
    query = db.query(UsageRecord).filter(
        UsageRecord.id == usage_record_id, UsageRecord.user_id == user_id
    )
    if for_update:
        # Re-read after our own UPDATE, not the copy already in the identity map
        query = query.with_for_update().populate_existing()
    record = query.first()
    if record is None:
        raise ValidationError("Post not found for this account")
    return record


def spend_ai_tool_credits(
    db: Session,
    user_id: int,
    tool: str,
    cost: int,
    usage_record_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SpendResult:
    """
    Charge an AI tool use against the credit balance.

    The decrement is one conditional UPDATE (balance >= cost), so concurrent
    charges can never take the balance below zero. When the use belongs to a
    post, the post's credits_spent is bumped in SQL and tools_used is merged
    from a locked re-read in the same transaction, so concurrent tools on one
    post all land. Admin accounts are not charged; their use is still
    recorded with a cost of zero.
    """
    if cost is None or cost <= 0:
        raise ValidationError("Tool cost must be a positive number of credits")
    now = now or utcnow()

    user = _get_user(db, user_id)
    is_admin = bool(user.is_admin)
    _tool_record(db, user_id, usage_record_id)

    charged = 0
    try:
        if not is_admin:
            result = db.execute(
                update(User)
                .where(User.id == user_id, User.purchased_credits >= cost)
                .values(
                    purchased_credits=User.purchased_credits - cost,
                    version=User.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                balance = current_balance(db, user_id)
                logger.info(
                    "[Ledger] user=%s insufficient credits for %s: balance=%s cost=%s",
                    user_id, tool, balance, cost,
                )
                raise InsufficientCredits(balance=balance, required=cost)
            charged = cost

        if usage_record_id is None:
            record = UsageRecord(
                user_id=user_id,
                allocation_kind=ALLOCATION_UNLIMITED if is_admin else ALLOCATION_PURCHASED,
                record_type=RECORD_AI_TOOL,
                status=None,
                credits_spent=charged,
                tools_used=[tool],
                created_at=now,
            )
            db.add(record)
        else:
            bumped = db.execute(
                update(UsageRecord)
                .where(UsageRecord.id == usage_record_id, UsageRecord.user_id == user_id)
                .values(credits_spent=func.coalesce(UsageRecord.credits_spent, 0) + charged)
                .execution_options(synchronize_session=False)
            )
            if bumped.rowcount != 1:
                raise ValidationError("Post not found for this account")
            record = _tool_record(db, user_id, usage_record_id, for_update=True)
            tools = list(record.tools_used or [])
            if tool not in tools:
                record.tools_used = tools + [tool]
        db.commit()
    except InsufficientCredits:
        raise
    except Exception:
        db.rollback()
        raise

    balance = current_balance(db, user_id)
    logger.info(
        "[Ledger] user=%s spent %s credits on %s, balance=%s", user_id, charged, tool, balance
    )
    return SpendResult(new_balance=balance, charged=charged, usage_record_id=record.id)


def refund_ai_tool_credits(
    db: Session,
    user_id: int,
    amount: int,
    usage_record_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """Give back credits charged for a tool use whose model call failed."""
    if amount <= 0:
        return current_balance(db, user_id)
    now = now or utcnow()
    try:
        result = db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                purchased_credits=User.purchased_credits + amount,
                version=User.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AccountNotFound()
        if usage_record_id is not None:
            db.execute(
                update(UsageRecord)
                .where(UsageRecord.id == usage_record_id, UsageRecord.user_id == user_id)
                .values(
                    credits_spent=case(
                        (UsageRecord.credits_spent > amount, UsageRecord.credits_spent - amount),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    balance = current_balance(db, user_id)
    logger.info("[Ledger] user=%s refunded %s credits, balance=%s", user_id, amount, balance)
    return balance


def _apply_grant(db: Session, user_id: int, quantity: int, unlimited_days: int, now: datetime) -> None:
    if unlimited_days:
        row = (
            db.query(User.unlimited_until, User.version)
            .filter(User.id == user_id)
            .first()
        )
        if row is None:
            raise AccountNotFound()
        # Extend an active window rather than restarting it
        base = row.unlimited_until if row.unlimited_until and row.unlimited_until > now else now
        result = db.execute(
            update(User)
            .where(User.id == user_id, User.version == row.version)
            .values(
                purchased_credits=User.purchased_credits + quantity,
                unlimited_until=base + timedelta(days=unlimited_days),
                version=User.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _VersionConflict()
        return

    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            purchased_credits=User.purchased_credits + quantity,
            version=User.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AccountNotFound()


def grant_credits_from_payment(
    db: Session,
    external_payment_id: str,
    user_id: int,
    quantity: int,
    unlimited_days: int = 0,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    payer_email: Optional[str] = None,
    payer_name: Optional[str] = None,
    plan_id: Optional[str] = None,
    metadata_json: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GrantResult:
    """
    Apply a successful payment at most once.

    The payment record (keyed by external_payment_id) and the balance change
    commit in the same transaction. A replay of an already-succeeded payment
    returns applied=False with the current balance and changes nothing.
    """
    if not external_payment_id:
        raise ValidationError("Payment id is required")
    if quantity < 0 or unlimited_days < 0:
        raise ValidationError("Grant quantities must not be negative")
    if quantity == 0 and unlimited_days == 0:
        raise ValidationError("Payment does not grant anything")
    now = now or utcnow()
    _get_user(db, user_id)

    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        try:
            payment = (
                db.query(PaymentRecord)
                .filter(PaymentRecord.external_payment_id == external_payment_id)
                .with_for_update()
                .first()
            )
            if payment is not None:
                if payment.status not in OPEN_STATUSES:
                    existing_status = payment.status
                    existing_id = payment.id
                    db.rollback()
                    if existing_status != PAYMENT_SUCCEEDED:
                        logger.warning(
                            "[Ledger] payment %s is already %s; not granting",
                            external_payment_id, existing_status,
                        )
                    else:
                        logger.info("[Ledger] payment %s already applied", external_payment_id)
                    return GrantResult(False, current_balance(db, user_id), existing_id)

                values: Dict[str, Any] = {
                    "status": PAYMENT_SUCCEEDED,
                    "user_id": user_id,
                    "credits_granted": quantity,
                    "updated_at": now,
                }
                if plan_id:
                    values["plan_id"] = plan_id
                if amount is not None:
                    values["amount"] = amount
                if currency:
                    values["currency"] = currency.upper()
                if payer_email:
                    values["payer_email"] = payer_email
                if payer_name:
                    values["payer_name"] = payer_name
                if metadata_json:
                    values["metadata_json"] = metadata_json
                # Only one delivery can move the record out of pending or unmatched
                flipped = db.execute(
                    update(PaymentRecord)
                    .where(
                        PaymentRecord.id == payment.id,
                        PaymentRecord.status.in_(OPEN_STATUSES),
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                payment_id = payment.id
                if flipped.rowcount != 1:
                    db.rollback()
                    return GrantResult(False, current_balance(db, user_id), payment_id)
            else:
                payment = PaymentRecord(
                    external_payment_id=external_payment_id,
                    user_id=user_id,
                    amount=amount or 0,
                    currency=(currency or "USD").upper(),
                    status=PAYMENT_SUCCEEDED,
                    payer_email=payer_email,
                    payer_name=payer_name,
                    plan_id=plan_id,
                    credits_granted=quantity,
                    metadata_json=metadata_json,
                    created_at=now,
                    updated_at=now,
                )
                db.add(payment)
                # The unique key on external_payment_id fires here for a racing delivery
                db.flush()
                payment_id = payment.id

            _apply_grant(db, user_id, quantity, unlimited_days, now)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "[Ledger] payment %s inserted concurrently, re-evaluating (attempt %s)",
                external_payment_id, attempt,
            )
            continue
        except _VersionConflict:
            db.rollback()
            logger.info("[Ledger] user=%s changed during grant, retry %s", user_id, attempt)
            continue
        except Exception:
            db.rollback()
            raise

        balance = current_balance(db, user_id)
        logger.info(
            "[Ledger] payment %s applied: user=%s +%s credits, +%s unlimited days, balance=%s",
            external_payment_id, user_id, quantity, unlimited_days, balance,
        )
        return GrantResult(True, balance, payment_id)

    raise LedgerConflict()


def record_payment_status(
    db: Session,
    external_payment_id: str,
    status: str,
    user_id: Optional[int] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    payer_email: Optional[str] = None,
    payer_name: Optional[str] = None,
    plan_id: Optional[str] = None,
    metadata_json: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PaymentRecord:
    """
    Record a non-granting payment status (pending, unmatched, failed,
    refunded, disputed).

    A terminal record is never re-opened, and an unmatched record (the
    provider already reported success) is never put back to pending. A succeeded record may only be
    annotated as refunded or disputed; balances are not touched either way.
    """
    if not external_payment_id:
        raise ValidationError("Payment id is required")
    if status == PAYMENT_SUCCEEDED:
        raise ValidationError("Successful payments are applied with grant_credits_from_payment")
    now = now or utcnow()

    for _ in range(MAX_WRITE_ATTEMPTS):
        payment = (
            db.query(PaymentRecord)
            .filter(PaymentRecord.external_payment_id == external_payment_id)
            .with_for_update()
            .first()
        )
        try:
            if payment is None:
                payment = PaymentRecord(
                    external_payment_id=external_payment_id,
                    user_id=user_id,
                    amount=amount or 0,
                    currency=(currency or "USD").upper(),
                    status=status,
                    payer_email=payer_email,
                    payer_name=payer_name,
                    plan_id=plan_id,
                    metadata_json=metadata_json,
                    created_at=now,
                    updated_at=now,
                )
                db.add(payment)
                db.commit()
                db.refresh(payment)
                return payment

            if payment.is_terminal:
                if status in (PAYMENT_REFUNDED, PAYMENT_DISPUTED) and payment.status == PAYMENT_SUCCEEDED:
                    payment.status = status
                    payment.updated_at = now
                    db.commit()
                    logger.warning(
                        "[Ledger] payment %s marked %s; granted credits are kept",
                        external_payment_id, status,
                    )
                else:
                    logger.info(
                        "[Ledger] payment %s is %s; ignoring %s",
                        external_payment_id, payment.status, status,
                    )
                    db.rollback()
                return payment

            if not (payment.status == PAYMENT_UNMATCHED and status == PAYMENT_PENDING):
                payment.status = status
            payment.updated_at = now
            if user_id is not None and payment.user_id is None:
                payment.user_id = user_id
            if amount is not None:
                payment.amount = amount
            if currency:
                payment.currency = currency.upper()
            if payer_email and not payment.payer_email:
                payment.payer_email = payer_email
            if payer_name and not payment.payer_name:
                payment.payer_name = payer_name
            if plan_id and not payment.plan_id:
                payment.plan_id = plan_id
            if metadata_json:
                payment.metadata_json = metadata_json
            db.commit()
            return payment
        except IntegrityError:
            # Another delivery created the record first; treat it as existing
            db.rollback()
            continue
        except Exception:
            db.rollback()
            raise

    raise LedgerConflict()
