from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from hana.config import Settings
from hana.logging import get_logger
from hana.service.errors import InvalidTokenError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: datetime
    claims: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens."""

    def __init__(
        self, settings: Settings, *, clock: Callable[[], datetime] = _utcnow
    ) -> None:
        if not settings.jwt_secret:
            raise ValueError("jwt_secret is required")
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._clock = clock
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 so "alg": "none" tokens cannot slip through
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= (self._clock() - self._leeway).timestamp():
            return None
        return payload

    def mint_access_token(self, user_id: str, phone_number: str) -> AccessToken:
        now = self._clock()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        claims = {
            "sub": user_id,
            "phone_number": phone_number,
            "token_type": ACCESS_TOKEN_TYPE,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            # distinct tokens (and session digests) within the same second
            "jti": uuid.uuid4().hex,
        }
        return AccessToken(token=self._encode_jwt(claims), expires_at=expires_at, claims=claims)

    def verify_access_token(self, token: Optional[str]) -> dict[str, Any]:
        """Return the claims of a valid access token.

        Tampered, malformed, expired and non-access tokens all raise the same
        ``InvalidTokenError``.
        """
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("token_type") != ACCESS_TOKEN_TYPE or not payload.get("sub"):
            raise InvalidTokenError("Invalid or expired token")
        return payload

    def mint_refresh_token(self) -> str:
        return secrets.token_urlsafe(48)

    @staticmethod
    def digest(access_token: str) -> str:
        return hashlib.sha256(access_token.encode()).hexdigest()
