from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from fraudwatch.api.error_handling import error_response, register_exception_handlers
from fraudwatch.api.routes import RateLimitInfo, router
from fraudwatch.config import Settings
from fraudwatch.logging import get_logger, set_correlation_id
from fraudwatch.service.errors import ErrorKind
from fraudwatch.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

MIN_SWEEP_INTERVAL_SECONDS = 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3
_RATE_LIMIT_EXEMPT_PATHS = {"/healthz"}

_sweep_task: asyncio.Task | None = None


async def _run_token_sweep(interval_seconds: int) -> None:
    """Periodically delete expired refresh tokens."""
    interval = max(MIN_SWEEP_INTERVAL_SECONDS, interval_seconds)
    while True:
        try:
            runtime = get_runtime()
            removed = await asyncio.to_thread(runtime.tokens.sweep_expired)
            if removed:
                logger.info("token_sweep_completed", removed=removed)
        except Exception as exc:
            logger.warning("token_sweep_failed", error=str(exc))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_token_sweep(runtime.settings.token_sweep_interval_seconds)
    )
    logger.info("token_sweep_scheduled")

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="FraudWatch API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # credentials are enabled, so never fall back to a wildcard
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Per-client request budget across the whole API.

    The limit and window come from ``RATE_LIMIT_MAX_REQUESTS`` and
    ``RATE_LIMIT_WINDOW_SECONDS``.
    """
    if request.method == "OPTIONS" or request.url.path in _RATE_LIMIT_EXEMPT_PATHS:
        return await call_next(request)
    runtime = get_runtime()
    limit = runtime.settings.rate_limit_max_requests
    client = request.client.host if request.client else "unknown"
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime,
        f"global:{client}",
        limit,
        runtime.settings.rate_limit_window_seconds,
        return_remaining=True,
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if not allowed:
        logger.warning("global_rate_limit_exceeded", client=client, path=request.url.path)
        response = error_response(
            429, "Too many requests, please try again later", ErrorKind.RATE_LIMITED
        )
        response.headers["Retry-After"] = str(reset_seconds)
    else:
        response = await call_next(request)
    info.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID, generating one if absent."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)

UPLOAD_DIR = Path(_settings.resolved_upload_root)
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR, html=False), name="uploads")


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Check the store and, when configured, Redis."""
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }
