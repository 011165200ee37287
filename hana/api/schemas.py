from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from hana.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "INVALID_PHONE",
    "RATE_LIMITED",
    "INVALID_CODE",
    "INVALID_TOKEN",
    "SESSION_EXPIRED",
    "INVALID_REFRESH_TOKEN",
    "USER_NOT_FOUND",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "INTERNAL_ERROR",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error payload with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Every response: a success flag plus either data or an error."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class CamelModel(BaseModel):
    """Accepts camelCase (mobile clients) and snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SendCodeRequest(CamelModel):
    # Optional so a missing number reports INVALID_PHONE rather than a schema error
    phone_number: Optional[str] = None
    platform: Optional[str] = Field(None, max_length=50)


class SendCodeResponse(CamelModel):
    request_id: str
    expires_at: datetime


class VerifyCodeRequest(CamelModel):
    phone_number: str = Field(..., min_length=1, max_length=32)
    code: str = Field(..., min_length=1, max_length=12)
    platform: Optional[str] = Field(None, max_length=50)


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=255)
    platform: Optional[str] = Field(None, max_length=50)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = Field(None, max_length=255)


class UserAuthResponse(CamelModel):
    phone_number: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    is_new_user: Optional[bool] = None
    is_onboarded: bool


class LogoutAllResponse(CamelModel):
    refresh_tokens_revoked: int
    sessions_ended: int


class ProfileRequest(CamelModel):
    full_name: Optional[str] = Field(None, max_length=200)
    hair_color: Optional[str] = Field(None, max_length=100)


class ProfileResponse(CamelModel):
    user_id: str
    phone_number: str
    full_name: str
    hair_color: str
    is_onboarded: bool
    created_at: datetime
    updated_at: datetime


class LocationModel(CamelModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geohash: Optional[str] = None


class PersonCardCreateRequest(CamelModel):
    name: Optional[str] = Field(None, max_length=200)
    context: Optional[str] = Field(None, max_length=5000)
    timestamp: Optional[datetime] = None
    location: Optional[LocationModel] = None
    is_discoverable: bool = False


class PersonCardUpdateRequest(CamelModel):
    name: Optional[str] = Field(None, max_length=200)
    context: Optional[str] = Field(None, max_length=5000)
    is_discoverable: Optional[bool] = None


class DiscoverableRequest(CamelModel):
    is_discoverable: bool


class PersonCardResponse(CamelModel):
    id: str
    name: str
    context: Optional[str] = None
    timestamp: datetime
    location: LocationModel
    is_discoverable: bool
    match_status: str
    created_at: datetime


class PersonCardListResponse(CamelModel):
    person_cards: list[PersonCardResponse]
    total: int
    has_more: bool
