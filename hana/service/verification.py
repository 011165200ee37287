from __future__ import annotations

import contextlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from hana.config import Settings
from hana.logging import get_logger
from hana.service.errors import InvalidCodeError, InvalidPhoneError, RateLimitedError
from hana.service.phone import normalize_phone
from hana.service.rate_limit import RateLimiter
from hana.service.sms import DispatchOutcome, SmsSender
from hana.storage.models import User, VerificationCode

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"\d{6}")
CODE_MIN = 100000
CODE_SPAN = 900000


@dataclass(frozen=True)
class CodeRequest:
    request_id: str
    phone_number: str
    expires_at: datetime
    dispatch: DispatchOutcome


@dataclass(frozen=True)
class VerificationResult:
    user: User
    is_new_user: bool
    code_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Uniformly random six-digit code in 100000-999999."""
    return str(CODE_MIN + secrets.randbelow(CODE_SPAN))


class VerificationEngine:
    """Issues, rate-limits and consumes one-time SMS codes."""

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        limiter: RateLimiter,
        sms: SmsSender,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.limiter = limiter
        self.sms = sms
        self._clock = clock

    def normalize(self, phone_number: Optional[str]) -> str:
        return normalize_phone(
            phone_number,
            country_code=self.settings.default_country_code,
            min_digits=self.settings.min_phone_digits,
        )

    def _message_for(self, code: str) -> str:
        return (
            f"Your {self.settings.sms_app_name} verification code is: {code}. "
            f"Valid for {self.settings.verification_code_ttl_minutes} minutes."
        )

    async def _dispatch(self, phone_number: str, code: str) -> DispatchOutcome:
        # Best effort: the code is already stored, so a failed send is only logged
        try:
            outcome = await self.sms.send(phone_number, self._message_for(code))
        except Exception as exc:
            logger.exception("sms_dispatch_crashed", phone_number=phone_number)
            return DispatchOutcome(delivered=False, error=type(exc).__name__)
        if outcome.error:
            logger.warning(
                "sms_dispatch_failed", phone_number=phone_number, error=outcome.error
            )
        return outcome

    async def request_code(
        self, phone_number: Optional[str], platform: Optional[str] = None
    ) -> CodeRequest:
        phone = self.normalize(phone_number)
        decision = await self.limiter.hit(phone)
        if not decision.allowed:
            logger.warning(
                "verification_rate_limited",
                phone_number=phone,
                retry_after=decision.retry_after_seconds,
            )
            raise RateLimitedError(
                "Too many verification requests, try again later",
                retry_after=decision.retry_after_seconds,
            )
        record = self.store.create_verification_code(
            phone,
            generate_code(),
            self.settings.verification_code_ttl_minutes,
            now=self._clock(),
        )
        outcome = await self._dispatch(phone, record.code)
        logger.info(
            "verification_code_issued",
            request_id=record.id,
            phone_number=phone,
            platform=platform,
            sms_delivered=outcome.delivered,
            sms_skipped=outcome.skipped,
            remaining_requests=decision.remaining,
        )
        return CodeRequest(
            request_id=record.id,
            phone_number=phone,
            expires_at=record.expires_at,
            dispatch=outcome,
        )

    def _phone_for_verify(self, phone_number: Optional[str], code: Optional[str]) -> str:
        if not code or not _CODE_PATTERN.fullmatch(code):
            raise InvalidCodeError("Invalid or expired verification code")
        try:
            return self.normalize(phone_number)
        except InvalidPhoneError:
            raise InvalidCodeError("Invalid or expired verification code") from None

    @contextlib.contextmanager
    def consume(
        self, phone_number: Optional[str], code: Optional[str]
    ) -> Iterator[VerificationResult]:
        """Consume a code and yield its user inside one store transaction.

        Work done in the ``with`` block commits together with the used flag;
        if the block raises, the code stays unused. A failed match counts an
        attempt against the phone's pending codes and raises
        ``InvalidCodeError`` without saying why.
        """
        phone = self._phone_for_verify(phone_number, code)
        now = self._clock()
        with self.store.transaction():
            record = self.store.consume_verification_code(
                phone, code, now=now, max_attempts=self.settings.max_code_attempts
            )
            if record is not None:
                user, created = self.store.get_or_create_user(phone, now=now)
                logger.info(
                    "verification_code_consumed",
                    request_id=record.id,
                    user_id=user.id,
                    is_new_user=created,
                )
                yield VerificationResult(user=user, is_new_user=created, code_id=record.id)
                return
        attempts = self.store.record_failed_code_attempt(phone, now=now)
        logger.warning("verification_code_rejected", phone_number=phone, pending_codes=attempts)
        raise InvalidCodeError("Invalid or expired verification code")

    def verify_code(self, phone_number: Optional[str], code: Optional[str]) -> VerificationResult:
        with self.consume(phone_number, code) as result:
            return result

    def pending_code(self, phone_number: str) -> Optional[VerificationCode]:
        """Newest unused, unexpired code for a phone (development lookup)."""
        return self.store.latest_verification_code(
            self.normalize(phone_number), now=self._clock()
        )
