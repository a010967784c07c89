import time
from unittest.mock import MagicMock, patch

import jwt
import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from jwt.algorithms import RSAAlgorithm

from app.core.errors import Unauthenticated
from app.dependencies.auth import JwksCache, decode_session_token

JWKS_URL = "https://auth.example.com/.well-known/jwks.json"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwks(private_key, kid):
    jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return {"keys": [jwk]}


def _token(private_key, kid, **claims):
    payload = {"sub": "user_rs", "email": "rs@example.com", "exp": int(time.time()) + 600}
    payload.update(claims)
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


def _response(data):
    response = MagicMock()
    response.json.return_value = data
    response.raise_for_status.return_value = None
    return response


def test_rs256_token_verified_with_cached_jwks(settings, rsa_key):
    cache = JwksCache(JWKS_URL)
    with patch("app.dependencies.auth.requests.get", return_value=_response(_jwks(rsa_key, "k1"))) as mock_get:
        first = decode_session_token(_token(rsa_key, "k1"), settings, cache)
        second = decode_session_token(_token(rsa_key, "k1"), settings, cache)

    assert first["sub"] == second["sub"] == "user_rs"
    assert mock_get.call_count == 1


def test_rotated_key_triggers_one_refetch(settings, rsa_key):
    cache = JwksCache(JWKS_URL)
    responses = [_response(_jwks(rsa_key, "old")), _response(_jwks(rsa_key, "new"))]
    with patch("app.dependencies.auth.requests.get", side_effect=responses) as mock_get:
        decode_session_token(_token(rsa_key, "old"), settings, cache)
        claims = decode_session_token(_token(rsa_key, "new"), settings, cache)

    assert claims["email"] == "rs@example.com"
    assert mock_get.call_count == 2


def test_unreachable_jwks_is_service_unavailable(settings, rsa_key):
    cache = JwksCache(JWKS_URL, retries=2)
    with patch("app.dependencies.auth.time.sleep"), patch(
        "app.dependencies.auth.requests.get", side_effect=requests.exceptions.ConnectionError("down")
    ):
        with pytest.raises(HTTPException) as excinfo:
            decode_session_token(_token(rsa_key, "k1"), settings, cache)

    assert excinfo.value.status_code == 503


def test_stale_keys_are_used_when_provider_is_down(settings, rsa_key):
    cache = JwksCache(JWKS_URL, ttl=0, retries=1)
    with patch("app.dependencies.auth.requests.get", return_value=_response(_jwks(rsa_key, "k1"))):
        decode_session_token(_token(rsa_key, "k1"), settings, cache)
    with patch(
        "app.dependencies.auth.requests.get", side_effect=requests.exceptions.Timeout("slow")
    ):
        claims = decode_session_token(_token(rsa_key, "k1"), settings, cache)

    assert claims["sub"] == "user_rs"


def test_hs256_audience_and_issuer(settings):
    settings.AUTH_AUDIENCE = "unbannable"
    settings.AUTH_ISSUER = "https://auth.example.com"
    good = jwt.encode(
        {"sub": "u", "exp": int(time.time()) + 60, "aud": "unbannable", "iss": "https://auth.example.com"},
        settings.AUTH_JWT_SECRET,
        algorithm="HS256",
    )
    wrong_aud = jwt.encode(
        {"sub": "u", "exp": int(time.time()) + 60, "aud": "other", "iss": "https://auth.example.com"},
        settings.AUTH_JWT_SECRET,
        algorithm="HS256",
    )

    assert decode_session_token(good, settings, None)["sub"] == "u"
    with pytest.raises(Unauthenticated):
        decode_session_token(wrong_aud, settings, None)


def test_token_claims_are_required(settings):
    no_exp = jwt.encode({"sub": "u"}, settings.AUTH_JWT_SECRET, algorithm="HS256")
    no_sub = jwt.encode({"exp": int(time.time()) + 60}, settings.AUTH_JWT_SECRET, algorithm="HS256")

    for token in (no_exp, no_sub):
        with pytest.raises(Unauthenticated):
            decode_session_token(token, settings, None)


def test_unsupported_algorithm(settings):
    token = jwt.encode({"sub": "u", "exp": int(time.time()) + 60}, "k" * 64, algorithm="HS512")

    with pytest.raises(Unauthenticated):
        decode_session_token(token, settings, None)


def test_rs256_without_jwks_is_misconfiguration(settings, rsa_key):
    with pytest.raises(HTTPException) as excinfo:
        decode_session_token(_token(rsa_key, "k1"), settings, None)

    assert excinfo.value.status_code == 500
