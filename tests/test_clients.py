import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from app.services.billing_email import send_credit_receipt_email
from app.services.dodo_client import DodoAPIError, DodoClient
from app.services.gemini_client import GeminiClient, GeminiError


def _run(coro):
    return asyncio.run(coro)


def test_dodo_create_payment_payload():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"payment_id": "pay_1", "payment_link": "https://pay/1"})

    async def scenario():
        dodo = DodoClient("key_123", "https://test.dodopayments.com/", transport=httpx.MockTransport(handler))
        try:
            return await dodo.create_payment(
                billing={"country": "US"},
                customer={"email": "a@example.com", "name": "A"},
                product_id="pdt_1",
                return_url="http://localhost:3000/success",
                metadata={"plan_id": "tenPosts"},
                amount=100,
            )
        finally:
            await dodo.aclose()

    data = _run(scenario())

    assert data["payment_id"] == "pay_1"
    assert captured["url"] == "https://test.dodopayments.com/payments"
    assert captured["auth"] == "Bearer key_123"
    assert captured["body"]["payment_link"] is True
    assert captured["body"]["customer"]["create_new_customer"] is True
    assert captured["body"]["product_cart"] == [{"product_id": "pdt_1", "quantity": 1, "amount": 100}]


def test_dodo_error_hides_bearer_message():
    def handler(request):
        return httpx.Response(401, text="Invalid bearer token")

    async def scenario():
        dodo = DodoClient("bad", "https://test.dodopayments.com", transport=httpx.MockTransport(handler))
        try:
            await dodo.get_payment("pay_1")
        finally:
            await dodo.aclose()

    with pytest.raises(DodoAPIError) as excinfo:
        _run(scenario())
    assert excinfo.value.status_code == 401
    assert "bearer" not in excinfo.value.detail.lower()


def _gemini(handler, api_key="g-key"):
    return GeminiClient(api_key, "gemini-test", transport=httpx.MockTransport(handler))


def test_gemini_returns_text():
    def handler(request):
        assert request.url.params["key"] == "g-key"
        assert request.url.path.endswith("/models/gemini-test:generateContent")
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"violations": []}'}]}}]})

    async def scenario():
        gemini = _gemini(handler)
        try:
            return await gemini.generate("prompt")
        finally:
            await gemini.aclose()

    assert _run(scenario()) == '{"violations": []}'


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(429, text="quota"),
        httpx.Response(200, json={"candidates": []}),
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "  "}]}}]}),
    ],
)
def test_gemini_failures_raise(response):
    async def scenario():
        gemini = _gemini(lambda request: response)
        try:
            await gemini.generate("prompt")
        finally:
            await gemini.aclose()

    with pytest.raises(GeminiError):
        _run(scenario())


def test_gemini_without_key_never_calls_out():
    def handler(request):
        raise AssertionError("no request expected")

    async def scenario():
        gemini = _gemini(handler, api_key="")
        try:
            await gemini.generate("prompt")
        finally:
            await gemini.aclose()

    with pytest.raises(GeminiError):
        _run(scenario())


@patch("app.services.billing_email.resend.Emails.send")
def test_receipt_email(mock_send):
    sent = send_credit_receipt_email(
        api_key="re_key",
        from_email="Unbannable <billing@unbannable.com>",
        app_name="Unbannable",
        to_email="buyer@example.com",
        amount=900,
        currency="usd",
        credits=100,
    )

    assert sent is True
    message = mock_send.call_args.args[0]
    assert message["to"] == ["buyer@example.com"]
    assert "USD 9.00" in message["subject"]
    assert "100 credits" in message["html"]


@patch("app.services.billing_email.resend.Emails.send", side_effect=RuntimeError("resend down"))
def test_receipt_email_never_raises(mock_send):
    assert send_credit_receipt_email("re_key", "from@x.com", "Unbannable", "b@example.com", 100, "USD", 10) is False
    assert send_credit_receipt_email("", "from@x.com", "Unbannable", "b@example.com", 100, "USD", 10) is False
    assert mock_send.call_count == 1
