from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Optional, Protocol, Tuple

from hana.config import Settings
from hana.logging import get_logger
from hana.service.errors import (
    InvalidRefreshTokenError,
    InvalidTokenError,
    SessionExpiredError,
    UserNotFoundError,
)
from hana.service.tokens import TokenIssuer
from hana.service.verification import VerificationEngine
from hana.storage.models import RefreshToken, Session, SweepResult, User, VerificationCode

logger = get_logger(__name__)


class AuthStore(Protocol):
    def transaction(self) -> ContextManager[Any]:
        ...

    def create_verification_code(
        self, phone_number: str, code: str, ttl_minutes: int, *, now: datetime
    ) -> VerificationCode:
        ...

    def consume_verification_code(
        self, phone_number: str, code: str, *, now: datetime, max_attempts: int
    ) -> Optional[VerificationCode]:
        ...

    def record_failed_code_attempt(self, phone_number: str, *, now: datetime) -> int:
        ...

    def get_or_create_user(self, phone_number: str, *, now: datetime) -> Tuple[User, bool]:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        ttl_days: int,
        device_info: Optional[str] = None,
        *,
        now: datetime,
    ) -> RefreshToken:
        ...

    def claim_refresh_token(self, token: str, *, now: datetime) -> Optional[RefreshToken]:
        ...

    def revoke_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> bool:
        ...

    def revoke_user_credentials(self, user_id: str) -> Tuple[int, int]:
        ...

    def create_session(
        self,
        user_id: str,
        access_token_hash: str,
        ttl_minutes: int,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        *,
        now: datetime,
    ) -> Session:
        ...

    def get_active_session(self, user_id: str, *, now: datetime) -> Optional[Session]:
        ...

    def sweep_expired(self, *, now: datetime) -> SweepResult:
        ...


@dataclass
class IssuedCredentials:
    user: User
    access_token: str
    refresh_token: str
    expires_at: datetime
    session_id: str


@dataclass
class SignInResult:
    credentials: IssuedCredentials
    is_new_user: bool


@dataclass
class UserContext:
    user_id: str
    phone_number: str
    full_name: str
    hair_color: str
    is_onboarded: bool
    session_id: str
    claims: dict[str, Any]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthService:
    """Session and refresh-token lifecycle on top of the credential store."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        verification: VerificationEngine,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.verification = verification
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def record_refresh_token(
        self, user_id: str, token: str, device_info: Optional[str] = None
    ) -> RefreshToken:
        return self.store.create_refresh_token(
            user_id,
            token,
            self.settings.refresh_token_ttl_days,
            device_info,
            now=self._now(),
        )

    def record_session(
        self,
        user_id: str,
        access_token_hash: str,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Session:
        return self.store.create_session(
            user_id,
            access_token_hash,
            self.settings.session_ttl_minutes,
            device_info,
            ip,
            now=self._now(),
        )

    def revoke_refresh_token(self, token: Optional[str], *, user_id: Optional[str] = None) -> bool:
        """Revoke one refresh token; with ``user_id`` only a token that user owns."""
        if not token:
            return False
        return self.store.revoke_refresh_token(token, user_id=user_id)

    def _issue_credentials(
        self, user: User, device_info: Optional[str], ip: Optional[str]
    ) -> IssuedCredentials:
        access = self.tokens.mint_access_token(user.id, user.phone_number)
        refresh_token = self.tokens.mint_refresh_token()
        self.record_refresh_token(user.id, refresh_token, device_info)
        session = self.record_session(
            user.id, self.tokens.digest(access.token), device_info, ip
        )
        return IssuedCredentials(
            user=user,
            access_token=access.token,
            refresh_token=refresh_token,
            expires_at=access.expires_at,
            session_id=session.id,
        )

    async def sign_in(
        self,
        phone_number: Optional[str],
        code: Optional[str],
        *,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> SignInResult:
        """Consume a verification code and open a session for its user.

        The used flag, a newly created user, the refresh token and the session
        commit together.
        """
        with self.verification.consume(phone_number, code) as verified:
            credentials = self._issue_credentials(verified.user, device_info, ip)
        self.logger.info(
            "sign_in_succeeded",
            user_id=verified.user.id,
            session_id=credentials.session_id,
            is_new_user=verified.is_new_user,
            device_info=device_info,
        )
        return SignInResult(credentials=credentials, is_new_user=verified.is_new_user)

    async def authenticate(self, token: Optional[str]) -> UserContext:
        claims = self.tokens.verify_access_token(token)
        user_id = str(claims["sub"])
        session = self.store.get_active_session(user_id, now=self._now())
        if session is None:
            raise SessionExpiredError("Session expired, please sign in again")
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found")
        return UserContext(
            user_id=user.id,
            phone_number=user.phone_number,
            full_name=user.full_name,
            hair_color=user.hair_color,
            is_onboarded=user.is_onboarded,
            session_id=session.id,
            claims=claims,
        )

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> IssuedCredentials:
        """Rotate a refresh token.

        Revoking the presented token and recording its replacement plus a new
        session happen in one store transaction; replaying the old token
        afterwards fails.
        """
        if not refresh_token:
            raise InvalidRefreshTokenError("Invalid refresh token")
        with self.store.transaction():
            claimed = self.store.claim_refresh_token(refresh_token, now=self._now())
            if claimed is None:
                raise InvalidRefreshTokenError("Invalid refresh token")
            user = self.store.get_user(claimed.user_id)
            if user is None:
                raise InvalidRefreshTokenError("Invalid refresh token")
            credentials = self._issue_credentials(
                user, device_info or claimed.device_info, ip
            )
        self.logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            previous_refresh_id=claimed.id,
            session_id=credentials.session_id,
        )
        return credentials

    async def logout(self, refresh_token: Optional[str], *, user_id: Optional[str] = None) -> None:
        revoked = self.revoke_refresh_token(refresh_token, user_id=user_id)
        self.logger.info("logout", user_id=user_id, refresh_token_revoked=revoked)

    async def logout_all(self, user_id: str) -> Tuple[int, int]:
        """Revoke every refresh token and end every session of a user."""
        revoked, ended = self.store.revoke_user_credentials(user_id)
        self.logger.info(
            "logout_all", user_id=user_id, refresh_tokens_revoked=revoked, sessions_ended=ended
        )
        return revoked, ended

    async def authenticate_header(self, authorization: Optional[str]) -> UserContext:
        token = extract_bearer(authorization)
        if token is None:
            raise InvalidTokenError("Access token required")
        return await self.authenticate(token)
