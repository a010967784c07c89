from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies.auth import get_current_user
from app.models.usage_record import RECORD_POST, UsageRecord
from app.models.user import User
from app.schemas.posts import CreatePostRequest, CreatePostResponse, PostLimitsResponse, PostResponse
from app.services import ledger

router = APIRouter()


@router.get("/limits", response_model=PostLimitsResponse)
def get_limits(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Whether the caller can create a post right now, and from which allocation."""
    summary = ledger.usage_summary(db, user.id)
    decision = summary["decision"]
    return {
        "can_create": decision.allowed,
        "allocation_kind": decision.allocation_kind,
        "remaining": decision.remaining,
        "reason": decision.reason,
        "free_posts_remaining": decision.free_remaining,
        "purchased_posts_remaining": decision.purchased_remaining,
        "purchased_credits": summary["purchased_credits"],
        "unlimited_until": summary["unlimited_until"],
        "is_admin": summary["is_admin"],
        "posts_this_month": summary["posts_this_month"],
    }


@router.post("/create", response_model=CreatePostResponse)
def create_post(
    payload: CreatePostRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    record = ledger.record_usage(
        db,
        user.id,
        title=payload.title,
        body=payload.content,
        subreddit=payload.subreddit,
    )
    return {"success": True, "post_id": record.id, "allocation_kind": record.allocation_kind}


@router.get("", response_model=List[PostResponse])
def list_posts(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return (
        db.query(UsageRecord)
        .filter(UsageRecord.user_id == user.id, UsageRecord.record_type == RECORD_POST)
        .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
        .limit(limit)
        .all()
    )
