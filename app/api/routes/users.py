from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies.auth import get_current_user, require_admin, verify_session_token
from app.models.user import User
from app.schemas.users import RoleResponse, SetAdminRequest, UserResponse, UserSyncRequest
from app.services import accounts, payment_events

router = APIRouter()


@router.get("/me", response_model=UserResponse)
def get_me(user: User = Depends(get_current_user)):
    """Current user profile with credit balances"""
    return user


@router.get("/role", response_model=RoleResponse)
def get_role(user: User = Depends(get_current_user)):
    return {"is_admin": bool(user.is_admin), "role": "admin" if user.is_admin else "user"}


@router.post("/sync", response_model=UserResponse)
def sync_user(
    payload: Optional[UserSyncRequest] = None,
    claims: Dict[str, Any] = Depends(verify_session_token),
    db: Session = Depends(get_db),
):
    """
    Idempotent self-sync from the verified token claims.
    Only identity fields are written, plus any payment that arrived before
    the account existed. The role is never changed here.
    """
    email = claims.get("email")
    external = accounts.get_by_external_id(db, claims["sub"])
    if external is None and not email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token missing email claim")
    full_name = (payload.full_name if payload else None) or claims.get("name")
    user = accounts.upsert_identity(db, claims["sub"], email, full_name)
    payment_events.apply_unmatched_payments(db, user)
    return user


@router.post("/set-admin", response_model=UserResponse)
def set_admin(
    payload: SetAdminRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Grant or revoke the admin role (admins only)."""
    target = payload.user_id if payload.user_id is not None else payload.email
    if target is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="email or user_id is required")
    if not payload.is_admin and payload.user_id == admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own admin role")
    return accounts.set_admin(db, target, payload.is_admin)
