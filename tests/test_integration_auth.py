"""Integration tests for the phone sign-in flow.

Tests the complete auth flow including:
- Requesting a verification code
- Verifying it for a new and a returning user
- Token refresh and replay rejection
- Logout and forced logout
- Per-phone code request limits
"""

import pytest
from fastapi.testclient import TestClient

from hana import app as app_module
from hana.service.runtime import get_runtime

PHONE = "(555) 123-4567"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _send_code(client, phone=PHONE):
    response = client.post("/api/auth/send-code", json={"phoneNumber": phone, "platform": "ios"})
    assert response.status_code == 200, response.text
    return response.json()


def _sign_in(client, phone=PHONE):
    _send_code(client, phone)
    code = get_runtime().verification.pending_code(phone).code
    response = client.post(
        "/api/auth/verify-code", json={"phoneNumber": phone, "code": code, "platform": "ios"}
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]["userAuth"]


def _bearer(auth):
    return {"Authorization": f"Bearer {auth['accessToken']}"}


class TestSendCode:
    def test_send_code_returns_request_id(self, client):
        body = _send_code(client)
        assert body["success"] is True
        assert body["data"]["requestId"]
        assert body["data"]["expiresAt"]

    def test_sixth_request_is_rate_limited(self, client):
        for _ in range(5):
            _send_code(client)
        response = client.post("/api/auth/send-code", json={"phoneNumber": "+1 555 123 4567"})

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert int(response.headers["Retry-After"]) > 0

    def test_short_phone_rejected(self, client):
        response = client.post("/api/auth/send-code", json={"phoneNumber": "555-1234"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PHONE"


class TestVerifyCode:
    def test_new_user_sign_in(self, client):
        auth = _sign_in(client)
        assert auth["phoneNumber"] == "+15551234567"
        assert auth["isNewUser"] is True
        assert auth["isOnboarded"] is False
        assert auth["accessToken"].count(".") == 2
        assert auth["refreshToken"]
        assert auth["userId"]

    def test_returning_user_sign_in(self, client):
        first = _sign_in(client)
        second = _sign_in(client, "555.123.4567")
        assert second["isNewUser"] is False
        assert second["userId"] == first["userId"]

    def test_code_cannot_be_reused(self, client):
        _send_code(client)
        code = get_runtime().verification.pending_code(PHONE).code
        payload = {"phoneNumber": PHONE, "code": code}
        assert client.post("/api/auth/verify-code", json=payload).status_code == 200

        response = client.post("/api/auth/verify-code", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CODE"

    def test_wrong_code(self, client):
        _send_code(client)
        response = client.post(
            "/api/auth/verify-code", json={"phoneNumber": PHONE, "code": "000000"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid or expired verification code"


class TestSessions:
    def test_bearer_token_grants_access(self, client):
        auth = _sign_in(client)
        response = client.get("/api/users/profile", headers=_bearer(auth))
        assert response.status_code == 200
        assert response.json()["data"]["profile"]["userId"] == auth["userId"]

    def test_garbage_token_rejected(self, client):
        response = client.get("/api/users/profile", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"

    def test_refresh_rotates_tokens(self, client):
        auth = _sign_in(client)
        response = client.post("/api/auth/refresh", json={"refreshToken": auth["refreshToken"]})
        assert response.status_code == 200
        rotated = response.json()["data"]["userAuth"]
        assert rotated["refreshToken"] != auth["refreshToken"]
        assert rotated["userId"] == auth["userId"]

        replay = client.post("/api/auth/refresh", json={"refreshToken": auth["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

        assert client.get("/api/users/profile", headers=_bearer(rotated)).status_code == 200

    def test_logout_revokes_refresh_token(self, client):
        auth = _sign_in(client)
        response = client.post(
            "/api/auth/logout", json={"refreshToken": auth["refreshToken"]}, headers=_bearer(auth)
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        again = client.post(
            "/api/auth/logout", json={"refreshToken": auth["refreshToken"]}, headers=_bearer(auth)
        )
        assert again.status_code == 200

        refresh = client.post("/api/auth/refresh", json={"refreshToken": auth["refreshToken"]})
        assert refresh.status_code == 401

    def test_logout_requires_bearer(self, client):
        response = client.post("/api/auth/logout", json={"refreshToken": "x"})
        assert response.status_code == 401

    def test_logout_all_ends_sessions(self, client):
        auth = _sign_in(client)
        response = client.post("/api/auth/logout-all", headers=_bearer(auth))
        assert response.status_code == 200
        assert response.json()["data"] == {"refreshTokensRevoked": 1, "sessionsEnded": 1}

        profile = client.get("/api/users/profile", headers=_bearer(auth))
        assert profile.status_code == 401
        assert profile.json()["error"]["code"] == "SESSION_EXPIRED"
