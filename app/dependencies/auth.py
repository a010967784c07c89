import logging
import time
from typing import Any, Dict, Optional

import jwt  # PyJWT
import requests
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import Unauthenticated
from app.db.session import get_db
from app.models.user import User
from app.services import accounts, payment_events

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ("RS256", "ES256")


class JwksCache:
    """
    Identity-provider signing keys, fetched with retries and cached for an hour.
    Only successful fetches are cached; a stale set (up to a day old) is used
    when the provider cannot be reached.
    """

    def __init__(self, url: str, ttl: int = 3600, max_stale: int = 86400, retries: int = 3):
        self.url = url
        self.ttl = ttl
        self.max_stale = max_stale
        self.retries = retries
        self._keys: Optional[jwt.PyJWKSet] = None
        self._fetched_at = 0.0

    def _fetch(self) -> Optional[jwt.PyJWKSet]:
        last_error = None
        for attempt in range(self.retries):
            try:
                logger.info("[AUTH] Fetching JWKS (attempt %s/%s)", attempt + 1, self.retries)
                r = requests.get(self.url, timeout=10)
                r.raise_for_status()
                return jwt.PyJWKSet.from_dict(r.json())
            except (requests.exceptions.RequestException, ValueError, jwt.PyJWKSetError) as e:
                last_error = e
                if attempt < self.retries - 1:
                    time.sleep(1)
        logger.error("[AUTH] Failed to fetch JWKS after %s attempts: %s", self.retries, last_error)
        return None

    def get_signing_key(self, kid: Optional[str], force_refresh: bool = False) -> Any:
        age = time.time() - self._fetched_at
        if self._keys is None or force_refresh or age >= self.ttl:
            fresh = self._fetch()
            if fresh is not None:
                self._keys, self._fetched_at = fresh, time.time()
            elif self._keys is None or age >= self.max_stale:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Authentication service temporarily unavailable. Please try again in a moment.",
                )
            else:
                logger.warning("[AUTH] Using stale JWKS cache (age: %.0fs) as fallback", age)

        for key in self._keys.keys:
            if kid is None or key.key_id == kid:
                return key.key
        if not force_refresh:
            # Keys may have been rotated since the last fetch
            return self.get_signing_key(kid, force_refresh=True)
        raise Unauthenticated("Unknown token signing key")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthenticated("Missing authorization header")
    if not authorization.startswith("Bearer "):
        raise Unauthenticated("Invalid header format. Expected 'Bearer <token>'")
    token = authorization[len("Bearer "):].strip()
    # Reject common invalid token values
    if not token or token.lower() in ("null", "undefined", "none"):
        raise Unauthenticated("Missing token")
    if len(token.split(".")) != 3:
        raise Unauthenticated("Invalid token format")
    return token


def decode_session_token(token: str, settings: Settings, jwks: Optional[JwksCache]) -> Dict[str, Any]:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.DecodeError:
        raise Unauthenticated("Invalid token header")
    algo = header.get("alg")

    if algo in ASYMMETRIC_ALGORITHMS:
        if jwks is None:
            logger.error("[AUTH] AUTH_JWKS_URL is missing for %s verification", algo)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: AUTH_JWKS_URL not set",
            )
        key = jwks.get_signing_key(header.get("kid"))
    elif algo == "HS256":
        if not settings.AUTH_JWT_SECRET:
            logger.error("[AUTH] AUTH_JWT_SECRET is missing for HS256 verification")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: AUTH_JWT_SECRET not set",
            )
        key = settings.AUTH_JWT_SECRET
    else:
        raise Unauthenticated(f"Unsupported token algorithm: {algo}")

    try:
        # Decode and verify in one step; the payload is never decoded again.
        return jwt.decode(
            token,
            key,
            algorithms=[algo],
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={
                "verify_aud": bool(settings.AUTH_AUDIENCE),
                "verify_iss": bool(settings.AUTH_ISSUER),
                "require": ["sub", "exp"],
            },
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError as e:
        logger.info("[AUTH] %s verification failed: %s", algo, e)
        raise Unauthenticated("Invalid token signature")


def verify_session_token(request: Request, authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Verify the Bearer session JWT and return its claims."""
    token = _bearer_token(authorization)
    return decode_session_token(token, request.app.state.settings, getattr(request.app.state, "jwks", None))


def get_current_user(
    claims: Dict[str, Any] = Depends(verify_session_token),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the caller's account by the token subject, creating it on first
    sight (lazy sync) and keeping the email current. A sync also applies
    payments that succeeded before the account existed.
    """
    external_id = claims.get("sub")
    email = claims.get("email")
    name = claims.get("name")
    try:
        user = accounts.get_by_external_id(db, external_id)
        if user is None or (email and user.email != email.strip().lower()):
            if user is None and not email:
                raise Unauthenticated("Token missing email claim")
            user = accounts.upsert_identity(db, external_id, email, name)
            logger.info("[AUTH] Synced user %s from token claims", user.id)
            payment_events.apply_unmatched_payments(db, user)
        return user
    except SQLAlchemyError as e:
        logger.error("[AUTH] Database error while resolving user: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable. Please try again in a moment.",
        )


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user
