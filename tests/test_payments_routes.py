import json

import httpx

from app.models.payment import PaymentRecord
from app.services import ledger
from app.services.dodo_client import DodoAPIError

BILLING = {"street": "1 Main St", "city": "Springfield", "state": "IL", "zipcode": "62701", "country": "US"}


def _create(client, auth_headers, **payload):
    body = {"billing": BILLING, "customer": {"name": "Pat Poster", "email": "poster@example.com"}}
    body.update(payload)
    return client.post("/api/payments/create", json=body, headers=auth_headers())


def test_create_payment_returns_link_and_records_pending(client, auth_headers, dodo, db):
    dodo.create_payment.return_value = {
        "payment_id": "pay_200",
        "payment_link": "https://checkout.dodopayments.com/pay_200",
        "total_amount": 100,
        "currency": "USD",
    }

    response = _create(client, auth_headers, plan_id="tenPosts")

    assert response.status_code == 200
    assert response.json()["payment_link"].endswith("pay_200")
    assert response.json()["plan_id"] == "tenPosts"

    kwargs = dodo.create_payment.call_args.kwargs
    assert kwargs["product_id"] == "pdt_test"
    assert kwargs["amount"] == 100
    assert kwargs["metadata"]["plan_id"] == "tenPosts"
    assert kwargs["metadata"]["credits"] == "10"

    record = db.query(PaymentRecord).filter_by(external_payment_id="pay_200").one()
    assert record.status == "pending"
    assert record.plan_id == "tenPosts"
    # Creating a checkout never grants anything
    assert ledger.current_balance(db, record.user_id) == 0


def test_create_payment_lists_missing_billing_fields(client, auth_headers, dodo):
    response = _create(client, auth_headers, billing={"street": "1 Main St", "city": " "})

    assert response.status_code == 400
    assert "city" in response.json()["detail"]
    assert "country" in response.json()["detail"]
    dodo.create_payment.assert_not_called()


def test_create_payment_unknown_plan(client, auth_headers):
    response = _create(client, auth_headers, plan_id="goldPlan")

    assert response.status_code == 400


def test_create_payment_upstream_errors(client, auth_headers, dodo):
    dodo.create_payment.side_effect = DodoAPIError(422, "product is not pay-what-you-want")
    assert _create(client, auth_headers).status_code == 422

    dodo.create_payment.side_effect = httpx.ReadTimeout("slow")
    assert _create(client, auth_headers).status_code == 504

    dodo.create_payment.side_effect = None
    dodo.create_payment.return_value = {"payment_id": "pay_201"}
    assert _create(client, auth_headers).status_code == 502


def test_create_payment_requires_auth(client):
    response = client.post("/api/payments/create", json={"billing": BILLING})

    assert response.status_code == 401


def test_verify_payment_reports_status_only(client, auth_headers, db, make_user):
    user = make_user()
    ledger.grant_credits_from_payment(db, "pay_202", user.id, 10, plan_id="tenPosts")

    processed = client.post("/api/payments/verify", json={"payment_id": "pay_202"}, headers=auth_headers())
    legacy = client.post("/api/verify-payment", json={"payment_id": "pay_202"}, headers=auth_headers())
    unknown = client.post("/api/payments/verify", json={"payment_id": "pay_nope"}, headers=auth_headers())

    assert processed.json()["already_processed"] is True
    assert legacy.json() == processed.json()
    assert unknown.json()["status"] == "not_found"
    assert ledger.current_balance(db, user.id) == 10


def test_history_and_details_are_scoped_to_caller(client, auth_headers, dodo, db, make_user):
    user = make_user()
    other = make_user(email="other@example.com")
    ledger.grant_credits_from_payment(db, "pay_mine", user.id, 10)
    ledger.grant_credits_from_payment(db, "pay_theirs", other.id, 10)
    dodo.get_payment.side_effect = httpx.ConnectError("down")

    history = client.get("/api/payments/history", headers=auth_headers())
    mine = client.get("/api/payments/details/pay_mine", headers=auth_headers())
    theirs = client.get("/api/payments/details/pay_theirs", headers=auth_headers())

    assert [p["external_payment_id"] for p in history.json()["payments"]] == ["pay_mine"]
    assert mine.status_code == 200
    assert mine.json()["payment"]["credits_granted"] == 10
    assert mine.json()["provider"] is None
    assert theirs.status_code == 404


def test_admin_records_unmatched_payment_once(client, auth_headers, db, make_user):
    make_user(is_admin=True)
    buyer = make_user(email="late@example.com")
    ledger.record_payment_status(
        db,
        "pay_300",
        "unmatched",
        amount=900,
        payer_email="late@example.com",
        metadata_json=json.dumps({"plan_id": "credits100"}),
    )

    first = client.post("/api/payments/record", json={"payment_id": "pay_300", "email": "late@example.com"}, headers=auth_headers())
    again = client.post("/api/payments/record", json={"payment_id": "pay_300", "email": "late@example.com"}, headers=auth_headers())

    assert first.status_code == 200
    assert first.json()["applied"] is True
    assert first.json()["credits_granted"] == 100
    assert first.json()["user_id"] == buyer.id
    assert again.json()["applied"] is False
    assert again.json()["new_balance"] == 100
    assert ledger.current_balance(db, buyer.id) == 100


def test_admin_records_payment_with_explicit_credits(client, auth_headers, db, make_user):
    make_user(is_admin=True)
    buyer = make_user(email="buyer@example.com")

    response = client.post(
        "/api/payments/record",
        json={"payment_id": "pay_301", "user_id": buyer.id, "credits": 25, "amount": 250},
        headers=auth_headers(),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "succeeded"
    record = db.query(PaymentRecord).filter_by(external_payment_id="pay_301").one()
    assert json.loads(record.metadata_json)["manual_entry"] is True
    assert ledger.current_balance(db, buyer.id) == 25


def test_record_payment_checks(client, auth_headers, make_user):
    make_user(is_admin=True)
    make_user(email="plain@example.com")

    unknown = client.post("/api/payments/record", json={"payment_id": "pay_302", "email": "ghost@example.com", "credits": 5}, headers=auth_headers())
    no_plan = client.post("/api/payments/record", json={"payment_id": "pay_303", "email": "plain@example.com"}, headers=auth_headers())
    not_admin = client.post(
        "/api/payments/record",
        json={"payment_id": "pay_304", "email": "plain@example.com", "credits": 5},
        headers=auth_headers(sub="user_plain", email="plain@example.com"),
    )

    assert unknown.status_code == 404
    assert no_plan.status_code == 400
    assert not_admin.status_code == 403
