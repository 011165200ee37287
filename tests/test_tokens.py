import base64
import json

import pytest

from clock import FakeClock
from hana.config import Settings
from hana.service.errors import InvalidTokenError
from hana.service.tokens import TokenIssuer


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    settings = Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")
    return TokenIssuer(settings, clock=clock)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def test_access_token_round_trip(issuer, clock):
    access = issuer.mint_access_token("user-1", "+15551234567")
    claims = issuer.verify_access_token(access.token)

    assert claims["sub"] == "user-1"
    assert claims["phone_number"] == "+15551234567"
    assert claims["token_type"] == "access"
    assert claims["iss"] == "hana"
    assert claims["aud"] == "hana-clients"
    assert claims["exp"] - claims["iat"] == 3600
    assert access.expires_at == clock.now.replace(hour=13)


def test_tokens_minted_in_the_same_second_differ(issuer):
    first = issuer.mint_access_token("user-1", "+15551234567")
    second = issuer.mint_access_token("user-1", "+15551234567")
    assert first.token != second.token
    assert issuer.digest(first.token) != issuer.digest(second.token)


def test_expired_token_rejected_after_leeway(issuer, clock):
    access = issuer.mint_access_token("user-1", "+15551234567")
    clock.advance(minutes=60, seconds=10)
    assert issuer.verify_access_token(access.token)["sub"] == "user-1"

    clock.advance(seconds=30)
    with pytest.raises(InvalidTokenError):
        issuer.verify_access_token(access.token)


def test_tampered_payload_rejected(issuer):
    header, _, signature = issuer.mint_access_token("user-1", "+15551234567").token.split(".")
    forged = _b64({"sub": "admin", "token_type": "access", "iss": "hana", "aud": "hana-clients", "exp": 9999999999})
    with pytest.raises(InvalidTokenError):
        issuer.verify_access_token(f"{header}.{forged}.{signature}")


def test_alg_none_rejected(issuer):
    token = issuer.mint_access_token("user-1", "+15551234567").token
    _, payload, _ = token.split(".")
    header = _b64({"alg": "none", "typ": "JWT"})
    with pytest.raises(InvalidTokenError):
        issuer.verify_access_token(f"{header}.{payload}.")


def test_token_from_other_secret_rejected(issuer, clock):
    other = TokenIssuer(Settings(jwt_secret="a-completely-different-secret-value"), clock=clock)
    token = other.mint_access_token("user-1", "+15551234567").token
    with pytest.raises(InvalidTokenError):
        issuer.verify_access_token(token)


def test_wrong_audience_rejected(issuer, clock):
    other = TokenIssuer(
        Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", jwt_audience="elsewhere"),
        clock=clock,
    )
    with pytest.raises(InvalidTokenError):
        issuer.verify_access_token(other.mint_access_token("user-1", "+1555").token)


@pytest.mark.parametrize("token", [None, "", "garbage", "a.b", "a.b.c.d", "é.é.é"])
def test_malformed_tokens_rejected(issuer, token):
    with pytest.raises(InvalidTokenError) as exc_info:
        issuer.verify_access_token(token)
    assert exc_info.value.status_code == 401
    assert exc_info.value.error_code == "INVALID_TOKEN"


def test_refresh_tokens_are_opaque_and_unique(issuer):
    tokens = {issuer.mint_refresh_token() for _ in range(50)}
    assert len(tokens) == 50
    assert all("." not in t and len(t) >= 60 for t in tokens)


def test_digest_is_sha256_hex(issuer):
    digest = issuer.digest("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
