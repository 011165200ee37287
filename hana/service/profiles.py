from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from hana.logging import get_logger
from hana.service.errors import UserNotFoundError, ValidationError
from hana.storage.models import User

logger = get_logger(__name__)

MAX_FULL_NAME_LENGTH = 100
MAX_HAIR_COLOR_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProfileService:
    def __init__(self, store, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self._clock = clock

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError("User not found", status_code=404)
        return user

    def _clean(self, full_name: Optional[str], hair_color: Optional[str]) -> tuple[str, str]:
        name = (full_name or "").strip()
        color = (hair_color or "").strip()
        if not name or not color:
            raise ValidationError("Full name and hair color are required")
        if len(name) > MAX_FULL_NAME_LENGTH or len(color) > MAX_HAIR_COLOR_LENGTH:
            raise ValidationError(
                "Profile field too long",
                detail={"full_name_max": MAX_FULL_NAME_LENGTH, "hair_color_max": MAX_HAIR_COLOR_LENGTH},
            )
        return name, color

    def _save(
        self, user_id: str, full_name: Optional[str], hair_color: Optional[str], *, onboard: bool
    ) -> User:
        name, color = self._clean(full_name, hair_color)
        user = self.store.update_user_profile(
            user_id, name, color, now=self._clock(), mark_onboarded=onboard
        )
        if user is None:
            raise UserNotFoundError("User not found", status_code=404)
        logger.info("profile_saved", user_id=user_id, onboarded=user.is_onboarded)
        return user

    def create_profile(
        self, user_id: str, full_name: Optional[str], hair_color: Optional[str]
    ) -> User:
        """First profile submission; marks the user onboarded."""
        return self._save(user_id, full_name, hair_color, onboard=True)

    def update_profile(
        self, user_id: str, full_name: Optional[str], hair_color: Optional[str]
    ) -> User:
        return self._save(user_id, full_name, hair_color, onboard=False)
