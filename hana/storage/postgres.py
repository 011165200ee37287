from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hana.logging import get_logger
from hana.storage.errors import ConstraintViolation, StorageError
from hana.storage.models import (
    PersonCard,
    RefreshToken,
    Session,
    SweepResult,
    User,
    VerificationCode,
    new_id,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(255) PRIMARY KEY,
        phone_number VARCHAR(20) UNIQUE NOT NULL,
        full_name VARCHAR(100) NOT NULL,
        hair_color VARCHAR(50) NOT NULL,
        is_onboarded BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS verification_codes (
        id VARCHAR(255) PRIMARY KEY,
        phone_number VARCHAR(20) NOT NULL,
        code VARCHAR(6) NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        attempts INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_verification_codes_phone
        ON verification_codes (phone_number, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id VARCHAR(255) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token VARCHAR(255) UNIQUE NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        device_info TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        id VARCHAR(255) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        access_token_hash VARCHAR(64) NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        device_info TEXT,
        ip_address VARCHAR(45),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_user_sessions_user
        ON user_sessions (user_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS person_cards (
        id VARCHAR(255) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        name VARCHAR(100) NOT NULL,
        context TEXT,
        timestamp TIMESTAMPTZ NOT NULL,
        latitude DOUBLE PRECISION,
        longitude DOUBLE PRECISION,
        geohash VARCHAR(12),
        is_discoverable BOOLEAN NOT NULL DEFAULT FALSE,
        match_status VARCHAR(20) NOT NULL DEFAULT 'unmatched',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_person_cards_user
        ON person_cards (user_id, created_at DESC)
    """,
)

_CARD_COLUMNS = frozenset(
    {"name", "context", "latitude", "longitude", "geohash", "is_discoverable", "match_status"}
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        phone_number=row["phone_number"],
        full_name=row["full_name"],
        hair_color=row["hair_color"],
        is_onboarded=row.get("is_onboarded", False),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _code_from_row(row: Dict[str, Any]) -> VerificationCode:
    return VerificationCode(
        id=str(row["id"]),
        phone_number=row["phone_number"],
        code=row["code"],
        expires_at=row["expires_at"],
        used=row.get("used", False),
        attempts=row.get("attempts", 0),
        created_at=row["created_at"],
    )


def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        expires_at=row["expires_at"],
        is_revoked=row.get("is_revoked", False),
        device_info=row.get("device_info"),
        created_at=row["created_at"],
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        access_token_hash=row["access_token_hash"],
        expires_at=row["expires_at"],
        device_info=row.get("device_info"),
        ip_address=row.get("ip_address"),
        created_at=row["created_at"],
    )


def _card_from_row(row: Dict[str, Any]) -> PersonCard:
    return PersonCard(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        name=row["name"],
        timestamp=row["timestamp"],
        context=row.get("context"),
        latitude=row.get("latitude"),
        longitude=row.get("longitude"),
        geohash=row.get("geohash"),
        is_discoverable=row.get("is_discoverable", False),
        match_status=row.get("match_status", "unmatched"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential and person-card store.

    Store calls made inside ``transaction()`` share one pooled connection,
    pinned in a ContextVar, so a verification or a refresh rotation commits
    or rolls back as a unit. Calls outside a transaction take a connection
    from the pool and commit on return.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar(
            f"hana_pg_tx_{id(self)}", default=None
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        active = self._tx_conn.get()
        if active is not None:
            yield active
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StorageError("database unavailable") from exc

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if self._tx_conn.get() is not None:
            yield self
            return
        with self._connect() as conn:
            with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield self
                finally:
                    self._tx_conn.reset(token)

    def _ensure_schema(self) -> None:
        """Create the five tables and their indexes if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=5)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # verification codes -------------------------------------------------

    def create_verification_code(
        self, phone_number: str, code: str, ttl_minutes: int, *, now: datetime
    ) -> VerificationCode:
        record = VerificationCode.new(phone_number, code, ttl_minutes, now=now)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO verification_codes (id, phone_number, code, expires_at, used, attempts, created_at)
                VALUES (%s, %s, %s, %s, FALSE, 0, %s)
                """,
                (record.id, record.phone_number, record.code, record.expires_at, record.created_at),
            )
        return record

    def consume_verification_code(
        self, phone_number: str, code: str, *, now: datetime, max_attempts: int
    ) -> Optional[VerificationCode]:
        # The row lock plus the outer used = FALSE re-check lets only one
        # concurrent caller flip a given row.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_codes SET used = TRUE
                WHERE id = (
                    SELECT id FROM verification_codes
                    WHERE phone_number = %s AND code = %s AND used = FALSE
                      AND expires_at > %s AND attempts < %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE
                )
                AND used = FALSE
                RETURNING *
                """,
                (phone_number, code, now, max_attempts),
            ).fetchone()
        return _code_from_row(row) if row else None

    def record_failed_code_attempt(self, phone_number: str, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_codes SET attempts = attempts + 1
                WHERE phone_number = %s AND used = FALSE AND expires_at > %s
                """,
                (phone_number, now),
            )
            return cur.rowcount

    def latest_verification_code(
        self, phone_number: str, *, now: datetime
    ) -> Optional[VerificationCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_codes
                WHERE phone_number = %s AND used = FALSE AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (phone_number, now),
            ).fetchone()
        return _code_from_row(row) if row else None

    # users --------------------------------------------------------------

    def get_or_create_user(self, phone_number: str, *, now: datetime) -> Tuple[User, bool]:
        candidate = User(id=new_id(), phone_number=phone_number, created_at=now, updated_at=now)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO users (id, phone_number, full_name, hair_color, is_onboarded, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (phone_number) DO NOTHING
                RETURNING *
                """,
                (
                    candidate.id,
                    candidate.phone_number,
                    candidate.full_name,
                    candidate.hair_color,
                    candidate.is_onboarded,
                    candidate.created_at,
                    candidate.updated_at,
                ),
            ).fetchone()
            if row:
                return _user_from_row(row), True
            row = conn.execute(
                "SELECT * FROM users WHERE phone_number = %s", (phone_number,)
            ).fetchone()
        if not row:
            raise StorageError("user vanished during get-or-create", {"field": "phone_number"})
        return _user_from_row(row), False

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def update_user_profile(
        self,
        user_id: str,
        full_name: str,
        hair_color: str,
        *,
        now: datetime,
        mark_onboarded: bool = False,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET full_name = %s, hair_color = %s, updated_at = %s,
                    is_onboarded = is_onboarded OR %s
                WHERE id = %s
                RETURNING *
                """,
                (full_name, hair_color, now, mark_onboarded, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    # refresh tokens -----------------------------------------------------

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token, expires_at, is_revoked, device_info, created_at)
                    VALUES (%s, %s, %s, %s, FALSE, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.token,
                        record.expires_at,
                        record.device_info,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return record

    def claim_refresh_token(self, token: str, *, now: datetime) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE
                WHERE token = %s AND is_revoked = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def revoke_refresh_token(self, token: str, *, user_id: Optional[str] = None) -> bool:
        sql = "UPDATE refresh_tokens SET is_revoked = TRUE WHERE token = %s AND is_revoked = FALSE"
        params: list[Any] = [token]
        if user_id is not None:
            sql += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount > 0

    def revoke_user_credentials(self, user_id: str) -> Tuple[int, int]:
        with self.transaction():
            with self._connect() as conn:
                revoked = conn.execute(
                    "UPDATE refresh_tokens SET is_revoked = TRUE WHERE user_id = %s AND is_revoked = FALSE",
                    (user_id,),
                ).rowcount
                deleted = conn.execute(
                    "DELETE FROM user_sessions WHERE user_id = %s", (user_id,)
                ).rowcount
        return revoked, deleted

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (id, user_id, access_token_hash, expires_at, device_info, ip_address, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.access_token_hash,
                        sess.expires_at,
                        sess.device_info,
                        sess.ip_address,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return sess

    def get_active_session(self, user_id: str, *, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    # sweeping -----------------------------------------------------------

    def sweep_expired(self, *, now: datetime) -> SweepResult:
        with self._connect() as conn:
            tokens = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s OR is_revoked = TRUE",
                (now,),
            ).rowcount
            sessions = conn.execute(
                "DELETE FROM user_sessions WHERE expires_at <= %s", (now,)
            ).rowcount
            codes = conn.execute(
                "DELETE FROM verification_codes WHERE expires_at <= %s", (now,)
            ).rowcount
        return SweepResult(refresh_tokens=tokens, sessions=sessions, verification_codes=codes)

    # person cards -------------------------------------------------------

    def create_person_card(self, card: PersonCard) -> PersonCard:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO person_cards (id, user_id, name, context, timestamp, latitude, longitude,
                                              geohash, is_discoverable, match_status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        card.id,
                        card.user_id,
                        card.name,
                        card.context,
                        card.timestamp,
                        card.latitude,
                        card.longitude,
                        card.geohash,
                        card.is_discoverable,
                        card.match_status,
                        card.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return card

    def list_person_cards(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
        discoverable: Optional[bool] = None,
    ) -> List[PersonCard]:
        query = "SELECT * FROM person_cards WHERE user_id = %s"
        params: List[Any] = [user_id]
        if discoverable is not None:
            query += " AND is_discoverable = %s"
            params.append(discoverable)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_card_from_row(row) for row in rows]

    def get_person_card(self, user_id: str, card_id: str) -> Optional[PersonCard]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM person_cards WHERE id = %s AND user_id = %s",
                (card_id, user_id),
            ).fetchone()
        return _card_from_row(row) if row else None

    def update_person_card(self, user_id: str, card_id: str, **fields) -> Optional[PersonCard]:
        unknown = set(fields) - _CARD_COLUMNS
        if unknown:
            raise ValueError(f"unknown person card fields: {sorted(unknown)}")
        if not fields:
            return self.get_person_card(user_id, card_id)
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params = list(fields.values()) + [card_id, user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE person_cards SET {assignments} WHERE id = %s AND user_id = %s RETURNING *",
                params,
            ).fetchone()
        return _card_from_row(row) if row else None

    def delete_person_card(self, user_id: str, card_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM person_cards WHERE id = %s AND user_id = %s", (card_id, user_id)
            )
            return cur.rowcount > 0
