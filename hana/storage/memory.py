from __future__ import annotations

import contextlib
import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from hana.logging import get_logger
from hana.storage.errors import ConstraintViolation
from hana.storage.models import (
    PersonCard,
    RefreshToken,
    Session,
    SweepResult,
    User,
    VerificationCode,
    new_id,
)

_TABLES = ("users", "verification_codes", "refresh_tokens", "sessions", "person_cards")


class MemoryStore:
    """In-process store used for tests and local development.

    Every public method takes ``_data_lock``; ``transaction()`` holds the same
    re-entrant lock for the whole block and restores a snapshot of every table
    if the block raises, so callers see the same all-or-nothing behaviour the
    Postgres store gives them.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.verification_codes: Dict[str, VerificationCode] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.person_cards: Dict[str, PersonCard] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES}
            self._tx_depth = 1
            try:
                yield self
            except BaseException as exc:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                self.logger.debug("memory_transaction_rolled_back", error_type=type(exc).__name__)
                raise
            finally:
                self._tx_depth = 0

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # verification codes -------------------------------------------------

    def create_verification_code(
        self, phone_number: str, code: str, ttl_minutes: int, *, now: datetime
    ) -> VerificationCode:
        record = VerificationCode.new(phone_number, code, ttl_minutes, now=now)
        with self._data_lock:
            self.verification_codes[record.id] = record
        return replace(record)

    def _newest(self, rows: List) -> Optional[object]:
        # later insertions win ties on created_at
        best = None
        for row in reversed(rows):
            if best is None or row.created_at > best.created_at:
                best = row
        return best

    def consume_verification_code(
        self, phone_number: str, code: str, *, now: datetime, max_attempts: int
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            candidates = [
                row
                for row in self.verification_codes.values()
                if row.phone_number == phone_number
                and row.code == code
                and row.is_usable(now, max_attempts)
            ]
            match = self._newest(candidates)
            if match is None:
                return None
            match.used = True
            return replace(match)

    def record_failed_code_attempt(self, phone_number: str, *, now: datetime) -> int:
        touched = 0
        with self._data_lock:
            for row in self.verification_codes.values():
                if row.phone_number == phone_number and not row.used and row.expires_at > now:
                    row.attempts += 1
                    touched += 1
        return touched

    def latest_verification_code(
        self, phone_number: str, *, now: datetime
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            candidates = [
                row
                for row in self.verification_codes.values()
                if row.phone_number == phone_number and not row.used and row.expires_at > now
            ]
            match = self._newest(candidates)
            return replace(match) if match else None

    # users --------------------------------------------------------------

    def get_or_create_user(self, phone_number: str, *, now: datetime) -> Tuple[User, bool]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone_number == phone_number:
                    return replace(user), False
            user = User(id=new_id(), phone_number=phone_number, created_at=now, updated_at=now)
            self.users[user.id] = user
            return replace(user), True

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def update_user_profile(
        self,
        user_id: str,
        full_name: str,
        hair_color: str,
        *,
        now: datetime,
        mark_onboarded: bool = False,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.full_name = full_name
            user.hair_color = hair_color
            user.updated_at = now
            if mark_onboarded:
                user.is_onboarded = True
            return replace(user)

    # refresh tokens -----------------------------------------------------

    def _require_user(self, user_id: str) -> None:
        if user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})

    def create_refresh_token(
        self,
        user_id: str,
        token: str,
        ttl_days: int,
        device_info: Optional[str] = None,
        *,
        now: datetime,
    ) -> RefreshToken:
        record = RefreshToken.new(user_id, token, ttl_days, device_info, now=now)
        with self._data_lock:
            self._require_user(user_id)
            if any(row.token == token for row in self.refresh_tokens.values()):
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.id] = record
        return replace(record)

    def claim_refresh_token(self, token: str, *, now: datetime) -> Optional[RefreshToken]:
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.token == token and row.is_active(now):
                    row.is_revoked = True
                    return replace(row)
        return None

    def revoke_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> bool:
        with self._data_lock:
            for row in self.refresh_tokens.values():
                if row.token != token or row.is_revoked:
                    continue
                if user_id is None or row.user_id == user_id:
                    row.is_revoked = True
                    return True
        return False

    def revoke_user_credentials(self, user_id: str) -> Tuple[int, int]:
        with self._data_lock:
            revoked = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.is_revoked:
                    row.is_revoked = True
                    revoked += 1
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                del self.sessions[sid]
            return revoked, len(stale)

    # sessions -----------------------------------------------------------

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
        sess = Session.new(
            user_id, access_token_hash, ttl_minutes, device_info, ip_address, now=now
        )
        with self._data_lock:
            self._require_user(user_id)
            self.sessions[sess.id] = sess
        return replace(sess)

    def get_active_session(self, user_id: str, *, now: datetime) -> Optional[Session]:
        with self._data_lock:
            candidates = [
                sess
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.expires_at > now
            ]
            match = self._newest(candidates)
            return replace(match) if match else None

    # sweeping -----------------------------------------------------------

    def sweep_expired(self, *, now: datetime) -> SweepResult:
        with self._data_lock:
            result = SweepResult()
            for key in [
                k
                for k, row in self.refresh_tokens.items()
                if row.expires_at <= now or row.is_revoked
            ]:
                del self.refresh_tokens[key]
                result.refresh_tokens += 1
            for key in [k for k, row in self.sessions.items() if row.expires_at <= now]:
                del self.sessions[key]
                result.sessions += 1
            for key in [
                k for k, row in self.verification_codes.items() if row.expires_at <= now
            ]:
                del self.verification_codes[key]
                result.verification_codes += 1
            return result

    # person cards -------------------------------------------------------

    def create_person_card(self, card: PersonCard) -> PersonCard:
        with self._data_lock:
            self._require_user(card.user_id)
            self.person_cards[card.id] = replace(card)
        return replace(card)

    def list_person_cards(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        discoverable: Optional[bool] = None,
    ) -> List[PersonCard]:
        with self._data_lock:
            rows = [
                card
                for card in self.person_cards.values()
                if card.user_id == user_id
                and (discoverable is None or card.is_discoverable == discoverable)
            ]
        # stable sort keeps later insertions first among equal timestamps
        rows = list(reversed(rows))
        rows.sort(key=lambda card: card.created_at, reverse=True)
        return [replace(card) for card in rows[offset : offset + limit]]

    def get_person_card(self, user_id: str, card_id: str) -> Optional[PersonCard]:
        with self._data_lock:
            card = self.person_cards.get(card_id)
            if not card or card.user_id != user_id:
                return None
            return replace(card)

    def update_person_card(self, user_id: str, card_id: str, **fields) -> Optional[PersonCard]:
        with self._data_lock:
            card = self.person_cards.get(card_id)
            if not card or card.user_id != user_id:
                return None
            for name, value in fields.items():
                setattr(card, name, value)
            return replace(card)

    def delete_person_card(self, user_id: str, card_id: str) -> bool:
        with self._data_lock:
            card = self.person_cards.get(card_id)
            if not card or card.user_id != user_id:
                return False
            del self.person_cards[card_id]
            return True
