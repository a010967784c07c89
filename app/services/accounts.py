"""
Account identity and role management.

Identity fields (external_id, email, full_name) follow the identity provider.
Nothing here touches credit fields; those belong to app.services.ledger.
"""
import logging
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.errors import AccountNotFound, LedgerConflict, ValidationError
from app.models.user import User
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


def get_by_external_id(db: Session, external_id: str) -> Optional[User]:
    return db.query(User).filter(User.external_id == external_id).first()


def find_by_email(db: Session, email: str) -> Optional[User]:
    if not email:
        return None
    return db.query(User).filter(User.email.ilike(email.strip())).first()


def upsert_identity(
    db: Session,
    external_id: str,
    email: Optional[str],
    full_name: Optional[str] = None,
) -> User:
    """Create the account for an identity, or bring its email/name up to date."""
    if not external_id:
        raise ValidationError("Identity id is required")

    for _ in range(MAX_WRITE_ATTEMPTS):
        try:
            user = get_by_external_id(db, external_id)
            if user is None:
                if not email:
                    raise ValidationError("Email is required to create an account")
                user = User(
                    external_id=external_id,
                    email=email.strip().lower(),
                    full_name=full_name,
                )
                db.add(user)
                db.commit()
                db.refresh(user)
                logger.info("[Accounts] Created user %s for identity %s", user.id, external_id)
                return user

            changed = False
            if email and user.email != email.strip().lower():
                user.email = email.strip().lower()
                changed = True
            if full_name and user.full_name != full_name:
                user.full_name = full_name
                changed = True
            if changed:
                user.updated_at = utcnow()
                db.commit()
                db.refresh(user)
                logger.info("[Accounts] Updated identity fields for user %s", user.id)
            return user
        except (IntegrityError, StaleDataError):
            # Racing sync for the same identity; re-read and apply on top
            db.rollback()
            continue
        except Exception:
            db.rollback()
            raise

    raise LedgerConflict()


def delete_identity(db: Session, external_id: str) -> Optional[User]:
    """
    Detach an account from a deleted identity.

    The row, balances and payment/usage history are kept; only the personal
    identity fields are anonymised.
    """
    for _ in range(MAX_WRITE_ATTEMPTS):
        user = get_by_external_id(db, external_id)
        if user is None:
            return None
        try:
            user.email = f"deleted+{user.id}@invalid"
            user.full_name = None
            user.external_id = f"deleted:{external_id}"
            user.updated_at = utcnow()
            db.commit()
            logger.info("[Accounts] Anonymised user %s (identity %s deleted)", user.id, external_id)
            return user
        except StaleDataError:
            db.rollback()
            continue
        except Exception:
            db.rollback()
            raise

    raise LedgerConflict()


def set_admin(db: Session, email_or_id: Union[str, int], is_admin: bool = True) -> User:
    """Grant or revoke the admin role. The only way is_admin ever changes."""
    for _ in range(MAX_WRITE_ATTEMPTS):
        if isinstance(email_or_id, int) or str(email_or_id).isdigit():
            user = db.query(User).filter(User.id == int(email_or_id)).first()
        else:
            user = find_by_email(db, str(email_or_id))
        if user is None:
            raise AccountNotFound()
        try:
            user.is_admin = is_admin
            user.updated_at = utcnow()
            db.commit()
            db.refresh(user)
            logger.info("[Accounts] user %s is_admin=%s", user.id, is_admin)
            return user
        except StaleDataError:
            db.rollback()
            continue
        except Exception:
            db.rollback()
            raise

    raise LedgerConflict()
