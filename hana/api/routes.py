from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from hana.api.schemas import (
    DiscoverableRequest,
    Envelope,
    LocationModel,
    LogoutAllResponse,
    LogoutRequest,
    PersonCardCreateRequest,
    PersonCardListResponse,
    PersonCardResponse,
    PersonCardUpdateRequest,
    ProfileRequest,
    ProfileResponse,
    RefreshRequest,
    SendCodeRequest,
    SendCodeResponse,
    UserAuthResponse,
    VerifyCodeRequest,
)
from hana.service.auth import IssuedCredentials, UserContext
from hana.service.person_cards import Location
from hana.service.runtime import get_runtime
from hana.storage.models import PersonCard, User

router = APIRouter(prefix="/api")


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json")


def _device_info(request: Request, platform: Optional[str]) -> Optional[str]:
    return platform or request.headers.get("User-Agent")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_auth(
    credentials: IssuedCredentials, *, is_new_user: Optional[bool] = None
) -> UserAuthResponse:
    return UserAuthResponse(
        phone_number=credentials.user.phone_number,
        user_id=credentials.user.id,
        access_token=credentials.access_token,
        refresh_token=credentials.refresh_token,
        expires_at=credentials.expires_at,
        is_new_user=is_new_user,
        is_onboarded=credentials.user.is_onboarded,
    )


def _profile(user: User) -> ProfileResponse:
    return ProfileResponse(
        user_id=user.id,
        phone_number=user.phone_number,
        full_name=user.full_name,
        hair_color=user.hair_color,
        is_onboarded=user.is_onboarded,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _card(card: PersonCard) -> PersonCardResponse:
    return PersonCardResponse(
        id=card.id,
        name=card.name,
        context=card.context,
        timestamp=card.timestamp,
        location=LocationModel(
            latitude=card.latitude, longitude=card.longitude, geohash=card.geohash
        ),
        is_discoverable=card.is_discoverable,
        match_status=card.match_status,
        created_at=card.created_at,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> UserContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate_header(authorization)


# auth ---------------------------------------------------------------------


@router.post("/auth/send-code", response_model=Envelope, tags=["auth"])
async def send_code(body: SendCodeRequest):
    runtime = get_runtime()
    issued = await runtime.verification.request_code(body.phone_number, body.platform)
    return Envelope(
        success=True,
        message="Verification code sent",
        data=_dump(SendCodeResponse(request_id=issued.request_id, expires_at=issued.expires_at)),
    )


@router.post("/auth/verify-code", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.sign_in(
        body.phone_number,
        body.code,
        device_info=_device_info(request, body.platform),
        ip=_client_ip(request),
    )
    return Envelope(
        success=True,
        message="Phone number verified",
        data={"userAuth": _dump(_user_auth(result.credentials, is_new_user=result.is_new_user))},
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    credentials = await runtime.auth.refresh(
        body.refresh_token,
        device_info=body.platform or None,
        ip=_client_ip(request),
    )
    return Envelope(
        success=True,
        message="Tokens refreshed",
        data={"userAuth": _dump(_user_auth(credentials))},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, user_id=principal.user_id)
    return Envelope(success=True, message="Logged out")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    revoked, ended = await runtime.auth.logout_all(principal.user_id)
    return Envelope(
        success=True,
        message="Logged out on all devices",
        data=_dump(LogoutAllResponse(refresh_tokens_revoked=revoked, sessions_ended=ended)),
    )


# users --------------------------------------------------------------------


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.profiles.get_profile(principal.user_id)
    return Envelope(success=True, data={"profile": _dump(_profile(user))})


@router.post("/users/profile", response_model=Envelope, tags=["users"])
async def create_profile(body: ProfileRequest, principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.profiles.create_profile(principal.user_id, body.full_name, body.hair_color)
    return Envelope(
        success=True,
        message="Profile created successfully",
        data={"profile": _dump(_profile(user))},
    )


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(body: ProfileRequest, principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.profiles.update_profile(principal.user_id, body.full_name, body.hair_color)
    return Envelope(
        success=True,
        message="Profile updated successfully",
        data={"profile": _dump(_profile(user))},
    )


# person cards -------------------------------------------------------------


@router.post("/person-cards", response_model=Envelope, tags=["person-cards"])
async def create_person_card(
    body: PersonCardCreateRequest, principal: UserContext = Depends(get_user)
):
    runtime = get_runtime()
    location = None
    if body.location is not None:
        location = Location(
            latitude=body.location.latitude,
            longitude=body.location.longitude,
            geohash=body.location.geohash,
        )
    card = runtime.person_cards.create(
        principal.user_id,
        name=body.name,
        timestamp=body.timestamp,
        context=body.context,
        location=location,
        is_discoverable=body.is_discoverable,
    )
    return Envelope(success=True, data={"personCard": _dump(_card(card))})


@router.get("/person-cards", response_model=Envelope, tags=["person-cards"])
async def list_person_cards(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    discoverable: Optional[bool] = Query(None),
    principal: UserContext = Depends(get_user),
):
    runtime = get_runtime()
    page = runtime.person_cards.list(
        principal.user_id, limit=limit, offset=offset, discoverable=discoverable
    )
    return Envelope(
        success=True,
        data=_dump(
            PersonCardListResponse(
                person_cards=[_card(card) for card in page.items],
                total=page.total,
                has_more=page.has_more,
            )
        ),
    )


@router.get("/person-cards/{card_id}", response_model=Envelope, tags=["person-cards"])
async def get_person_card(card_id: str, principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    card = runtime.person_cards.get(principal.user_id, card_id)
    return Envelope(success=True, data={"personCard": _dump(_card(card))})


@router.put("/person-cards/{card_id}", response_model=Envelope, tags=["person-cards"])
async def update_person_card(
    card_id: str,
    body: PersonCardUpdateRequest,
    principal: UserContext = Depends(get_user),
):
    runtime = get_runtime()
    card = runtime.person_cards.update(
        principal.user_id,
        card_id,
        name=body.name,
        context=body.context,
        is_discoverable=body.is_discoverable,
    )
    return Envelope(
        success=True,
        message="Person card updated successfully",
        data={"personCard": _dump(_card(card))},
    )


@router.delete("/person-cards/{card_id}", response_model=Envelope, tags=["person-cards"])
async def delete_person_card(card_id: str, principal: UserContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.person_cards.delete(principal.user_id, card_id)
    return Envelope(success=True, message="Person card deleted successfully")


@router.post(
    "/person-cards/{card_id}/discoverable", response_model=Envelope, tags=["person-cards"]
)
async def set_discoverable(
    card_id: str,
    body: DiscoverableRequest,
    principal: UserContext = Depends(get_user),
):
    runtime = get_runtime()
    card = runtime.person_cards.set_discoverable(
        principal.user_id, card_id, body.is_discoverable
    )
    return Envelope(
        success=True,
        message="Discoverability updated successfully",
        data={"personCard": _dump(_card(card))},
    )
