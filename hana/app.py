from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from hana.api.error_handling import error_response, register_exception_handlers
from hana.api.routes import router
from hana.config import Settings
from hana.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Paths exempt from the per-IP request limit
_UNLIMITED_PATHS = {"/", "/health"}

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Sweep once at startup, then keep an hourly sweep running until shutdown."""
    global _sweep_task
    from hana.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.sweeper.run_once()
        _sweep_task = asyncio.create_task(
            runtime.sweeper.run_periodic(runtime.settings.sweep_interval_seconds)
        )
        logger.info(
            "sweeper_started", interval_seconds=runtime.settings.sweep_interval_seconds
        )
    except Exception as exc:
        logger.error("startup_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hana Backend API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:8081",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:8081",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def limit_requests_per_ip(request: Request, call_next):
    if request.url.path in _UNLIMITED_PATHS:
        return await call_next(request)
    from hana.service.runtime import get_runtime

    client_ip = request.client.host if request.client else "unknown"
    decision = await get_runtime().ip_limiter.hit(client_ip)
    if not decision.allowed:
        logger.warning(
            "ip_rate_limited",
            client_ip=client_ip,
            path=request.url.path,
            retry_after=decision.retry_after_seconds,
        )
        return error_response(
            429,
            "Too many requests from this IP, please try again later",
            code="RATE_LIMITED",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for logs and the response envelope.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID is
    generated. The id is echoed back in the ``X-Request-ID`` header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded database probe."""
    from hana.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_ok = False

    return {
        "status": "OK" if db_ok else "DEGRADED",
        "database": "healthy" if db_ok else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": _settings.app_env,
        "version": __version__,
    }


@app.get("/")
async def root() -> Dict[str, Any]:
    return {
        "message": "Hana Backend API",
        "version": __version__,
        "environment": _settings.app_env,
    }


def create_app() -> FastAPI:
    return app
