import json

from conftest import IDENTITY_SECRET, signed_webhook_headers

from app.models.payment import PaymentRecord
from app.models.user import User
from app.services import ledger


def _user_event(event_type, user_id="user_abc", email="new@example.com", **fields):
    data = {
        "id": user_id,
        "email_addresses": [
            {"id": "idn_2", "email_address": "secondary@example.com"},
            {"id": "idn_1", "email_address": email},
        ],
        "primary_email_address_id": "idn_1",
        "first_name": "Casey",
        "last_name": "Writer",
    }
    data.update(fields)
    return json.dumps({"type": event_type, "data": data}).encode()


def _deliver(client, body, prefix="svix"):
    return client.post(
        "/webhooks/identity",
        content=body,
        headers=signed_webhook_headers(IDENTITY_SECRET, body, prefix=prefix),
    )


def test_user_created_then_updated(client, db):
    created = _deliver(client, _user_event("user.created"))
    updated = _deliver(client, _user_event("user.updated", email="Renamed@Example.com"), prefix="webhook")

    assert created.json() == {"status": "success", "action": "synced"}
    assert updated.status_code == 200
    user = db.query(User).filter_by(external_id="user_abc").one()
    assert user.email == "renamed@example.com"
    assert user.full_name == "Casey Writer"
    assert user.purchased_credits == 0


def test_user_deleted_keeps_history(client, db, make_user):
    user = make_user(email="leaving@example.com", external_id="user_leaving", purchased_credits=7)

    response = _deliver(client, _user_event("user.deleted", user_id="user_leaving"))

    assert response.json()["action"] == "deleted"
    db.expire_all()
    row = db.get(User, user.id)
    assert row.email == f"deleted+{user.id}@invalid"
    assert row.external_id == "deleted:user_leaving"
    assert row.purchased_credits == 7


def test_user_deleted_for_unknown_identity(client):
    response = _deliver(client, _user_event("user.deleted", user_id="user_never_seen"))

    assert response.json()["action"] == "unknown"


def test_event_without_email_is_rejected(client):
    body = json.dumps({"type": "user.created", "data": {"id": "user_noemail", "email_addresses": []}}).encode()

    response = _deliver(client, body)

    assert response.status_code == 400


def test_bad_signature(client, db):
    body = _user_event("user.created")
    headers = signed_webhook_headers(IDENTITY_SECRET, body, prefix="svix")
    headers["svix-signature"] = "v1,AAAA"

    response = client.post("/webhooks/identity", content=body, headers=headers)

    assert response.status_code == 401
    assert db.query(User).count() == 0


def test_other_event_types_are_ignored(client):
    body = json.dumps({"type": "session.created", "data": {"id": "sess_1"}}).encode()

    response = _deliver(client, body)

    assert response.json() == {"status": "ignored"}


def test_user_created_applies_payment_made_before_sign_up(client, db):
    ledger.record_payment_status(
        db,
        "pay_early",
        "unmatched",
        amount=900,
        currency="USD",
        payer_email="new@example.com",
        metadata_json=json.dumps({"plan_id": "credits100"}),
    )

    response = _deliver(client, _user_event("user.created"))

    assert response.status_code == 200
    user = db.query(User).filter_by(external_id="user_abc").one()
    assert ledger.current_balance(db, user.id) == 100
    assert db.query(PaymentRecord).filter_by(external_payment_id="pay_early").one().status == "succeeded"
