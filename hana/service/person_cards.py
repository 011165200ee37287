from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from hana.logging import get_logger
from hana.service.errors import NotFoundError, ValidationError
from hana.storage.models import PersonCard, new_id

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_NAME_LENGTH = 100
MAX_GEOHASH_LENGTH = 12


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Location:
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    geohash: Optional[str] = None


@dataclass
class PersonCardPage:
    items: List[PersonCard]
    limit: int
    offset: int

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def has_more(self) -> bool:
        return len(self.items) == self.limit


def _validate_location(location: Optional[Location]) -> Location:
    if location is None:
        return Location()
    if location.latitude is not None and not -90 <= location.latitude <= 90:
        raise ValidationError("latitude must be between -90 and 90")
    if location.longitude is not None and not -180 <= location.longitude <= 180:
        raise ValidationError("longitude must be between -180 and 180")
    if location.geohash is not None and len(location.geohash) > MAX_GEOHASH_LENGTH:
        raise ValidationError(f"geohash must be at most {MAX_GEOHASH_LENGTH} characters")
    return location


def _validate_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


class PersonCardService:
    """Owner-scoped CRUD for person cards.

    A card that does not exist and a card owned by someone else both raise
    ``NotFoundError``.
    """

    def __init__(self, store, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self._clock = clock

    def create(
        self,
        user_id: str,
        *,
        name: Optional[str],
        timestamp: Optional[datetime],
        context: Optional[str] = None,
        location: Optional[Location] = None,
        is_discoverable: bool = False,
    ) -> PersonCard:
        if not name or timestamp is None:
            raise ValidationError("Name and timestamp are required")
        loc = _validate_location(location)
        card = PersonCard(
            id=new_id(),
            user_id=user_id,
            name=_validate_name(name),
            timestamp=timestamp,
            context=context,
            latitude=loc.latitude,
            longitude=loc.longitude,
            geohash=loc.geohash,
            is_discoverable=bool(is_discoverable),
            created_at=self._clock(),
        )
        created = self.store.create_person_card(card)
        logger.info("person_card_created", user_id=user_id, card_id=created.id)
        return created

    def list(
        self,
        user_id: str,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        discoverable: Optional[bool] = None,
    ) -> PersonCardPage:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        items = self.store.list_person_cards(
            user_id, limit=limit, offset=offset, discoverable=discoverable
        )
        return PersonCardPage(items=items, limit=limit, offset=offset)

    def get(self, user_id: str, card_id: str) -> PersonCard:
        card = self.store.get_person_card(user_id, card_id)
        if card is None:
            raise NotFoundError("Person card not found")
        return card

    def update(
        self,
        user_id: str,
        card_id: str,
        *,
        name: Optional[str] = None,
        context: Optional[str] = None,
        is_discoverable: Optional[bool] = None,
    ) -> PersonCard:
        fields = {}
        if name is not None:
            fields["name"] = _validate_name(name)
        if context is not None:
            fields["context"] = context
        if is_discoverable is not None:
            fields["is_discoverable"] = is_discoverable
        card = self.store.update_person_card(user_id, card_id, **fields)
        if card is None:
            raise NotFoundError("Person card not found")
        logger.info("person_card_updated", user_id=user_id, card_id=card_id, fields=sorted(fields))
        return card

    def set_discoverable(self, user_id: str, card_id: str, is_discoverable: bool) -> PersonCard:
        card = self.store.update_person_card(
            user_id, card_id, is_discoverable=bool(is_discoverable)
        )
        if card is None:
            raise NotFoundError("Person card not found")
        return card

    def delete(self, user_id: str, card_id: str) -> None:
        if not self.store.delete_person_card(user_id, card_id):
            raise NotFoundError("Person card not found")
        logger.info("person_card_deleted", user_id=user_id, card_id=card_id)
