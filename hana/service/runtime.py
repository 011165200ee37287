from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from hana.config import RateLimitBackend, Settings, get_settings, reset_settings_cache
from hana.logging import get_logger
from hana.service.auth import AuthService
from hana.service.person_cards import PersonCardService
from hana.service.profiles import ProfileService
from hana.service.rate_limit import (
    RateLimiter,
    RedisSlidingWindowRateLimiter,
    SlidingWindowRateLimiter,
)
from hana.service.sms import SmsSender
from hana.service.sweeper import ExpirySweeper
from hana.service.tokens import TokenIssuer
from hana.service.verification import VerificationEngine
from hana.storage.memory import MemoryStore
from hana.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_code_limiter(settings: Settings) -> RateLimiter:
    window = settings.code_request_window_minutes * 60
    if settings.rate_limit_backend == RateLimitBackend.REDIS:
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                limiter = RedisSlidingWindowRateLimiter(
                    settings.redis_url, settings.code_request_limit, window, prefix="hana:code"
                )
                limiter.verify_connection()
                return limiter
            except Exception as exc:
                redis_error = exc
        if not settings.test_mode and settings.is_production:
            raise RuntimeError(
                "RATE_LIMIT_BACKEND=redis but Redis is unreachable; start Redis or use the memory backend"
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Code request limits are kept in process memory only.",
        )
    return SlidingWindowRateLimiter(settings.code_request_limit, window)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.code_limiter = _build_code_limiter(self.settings)
        self.ip_limiter = SlidingWindowRateLimiter(
            self.settings.ip_rate_limit, self.settings.ip_rate_limit_window_minutes * 60
        )
        self.sms = SmsSender(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_from_number,
            timeout=self.settings.sms_timeout_seconds,
        )
        self.tokens = TokenIssuer(self.settings)
        self.verification = VerificationEngine(
            self.store, self.settings, limiter=self.code_limiter, sms=self.sms
        )
        self.auth = AuthService(
            self.store, self.settings, tokens=self.tokens, verification=self.verification
        )
        self.profiles = ProfileService(self.store)
        self.person_cards = PersonCardService(self.store)
        self.sweeper = ExpirySweeper(
            self.store, limiters=[self.code_limiter, self.ip_limiter]
        )

        logger.info(
            "runtime_initialized",
            code_limiter=type(self.code_limiter).__name__,
            sms_configured=self.sms.is_configured,
            app_env=self.settings.app_env,
        )

    async def close(self) -> None:
        if isinstance(self.code_limiter, RedisSlidingWindowRateLimiter):
            await self.code_limiter.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; the locked re-check stops two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.store.close()
        runtime = Runtime(settings)
        return runtime
