import base64
import json
import time
from unittest.mock import MagicMock

import jwt
import pytest
from fastapi.testclient import TestClient

from app.core.config import Settings
from app.db.base import Base
from app.db.session import create_db_engine, create_session_factory
from app.main import create_app
from app.models.user import User
from app.services.dodo_client import DodoClient
from app.services.gemini_client import GeminiClient
from app.services.reddit_client import RedditClient
from app.utils.webhook_signature import sign_payload

JWT_SECRET = "test-session-secret-that-is-long-enough-for-hs256"
DODO_SECRET = "whsec_" + base64.b64encode(b"dodo-webhook-test-secret").decode()
IDENTITY_SECRET = "whsec_" + base64.b64encode(b"identity-webhook-test-secret").decode()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        RUN_MIGRATIONS=False,
        AUTH_JWT_SECRET=JWT_SECRET,
        DODO_API_KEY="dodo-test-key",
        DODO_PRODUCT_ID="pdt_test",
        DODO_WEBHOOK_SECRET=DODO_SECRET,
        IDENTITY_WEBHOOK_SECRET=IDENTITY_SECRET,
        GEMINI_API_KEY="gemini-test-key",
        RESEND_API_KEY="",
    )


@pytest.fixture
def session_factory(settings):
    """Sessions on the same database file the app uses."""
    engine = create_db_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(email="poster@example.com", external_id=None, **fields):
        user = User(
            external_id=external_id or f"user_{email.split('@')[0]}",
            email=email,
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def dodo():
    return MagicMock(spec=DodoClient)


@pytest.fixture
def gemini():
    return MagicMock(spec=GeminiClient)


@pytest.fixture
def reddit():
    return MagicMock(spec=RedditClient)


@pytest.fixture
def client(settings, session_factory, dodo, gemini, reddit):
    app = create_app(settings, clients={"dodo": dodo, "gemini": gemini, "reddit": reddit})
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    def _headers(sub="user_poster", email="poster@example.com", **claims):
        payload = {"sub": sub, "email": email, "exp": int(time.time()) + 3600}
        payload.update(claims)
        token = jwt.encode(payload, JWT_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


def signed_webhook_headers(secret, body, msg_id="msg_1", timestamp=None, prefix="webhook"):
    timestamp = str(int(time.time())) if timestamp is None else str(timestamp)
    return {
        f"{prefix}-id": msg_id,
        f"{prefix}-timestamp": timestamp,
        f"{prefix}-signature": sign_payload(secret, msg_id, timestamp, body),
        "content-type": "application/json",
    }


def dodo_event(event_type, payment_id, metadata=None, email="poster@example.com", total_amount=900, currency="USD"):
    return json.dumps({
        "type": event_type,
        "business_id": "bus_test",
        "data": {
            "payment_id": payment_id,
            "status": event_type.split(".")[-1],
            "total_amount": total_amount,
            "currency": currency,
            "customer": {"customer_id": "cus_1", "email": email, "name": "Pat Poster"},
            "metadata": metadata or {},
        },
    }).encode()
