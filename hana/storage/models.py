from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

PLACEHOLDER_FULL_NAME = "New User"
PLACEHOLDER_HAIR_COLOR = "unknown"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    phone_number: str
    full_name: str = PLACEHOLDER_FULL_NAME
    hair_color: str = PLACEHOLDER_HAIR_COLOR
    is_onboarded: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class VerificationCode:
    id: str
    phone_number: str
    code: str
    expires_at: datetime
    used: bool = False
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, phone_number: str, code: str, ttl_minutes: int, *, now: datetime
    ) -> "VerificationCode":
        return cls(
            id=new_id(),
            phone_number=phone_number,
            code=code,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_usable(self, now: datetime, max_attempts: int) -> bool:
        return not self.used and self.expires_at > now and self.attempts < max_attempts


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    is_revoked: bool = False
    device_info: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_days: int,
        device_info: Optional[str] = None,
        *,
        now: datetime,
    ) -> "RefreshToken":
        return cls(
            id=new_id(),
            user_id=user_id,
            token=token,
            expires_at=now + timedelta(days=ttl_days),
            device_info=device_info,
            created_at=now,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass
class Session:
    id: str
    user_id: str
    access_token_hash: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token_hash: str,
        ttl_minutes: int = 60,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        *,
        now: datetime,
    ) -> "Session":
        return cls(
            id=new_id(),
            user_id=user_id,
            access_token_hash=access_token_hash,
            expires_at=now + timedelta(minutes=ttl_minutes),
            device_info=device_info,
            ip_address=ip_address,
            created_at=now,
        )


@dataclass
class PersonCard:
    id: str
    user_id: str
    name: str
    timestamp: datetime
    context: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geohash: Optional[str] = None
    is_discoverable: bool = False
    match_status: str = "unmatched"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SweepResult:
    refresh_tokens: int = 0
    sessions: int = 0
    verification_codes: int = 0

    @property
    def total(self) -> int:
        return self.refresh_tokens + self.sessions + self.verification_codes
