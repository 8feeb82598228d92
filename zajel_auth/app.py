from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from zajel_auth.api.error_handling import register_exception_handlers
from zajel_auth.api.routes import auth_router, user_router
from zajel_auth.config import Settings
from zajel_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its pools on shutdown."""
    from zajel_auth.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Zajel Alsaadaaa Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.allowed_origins:
        return _settings.allowed_origins
    # Credentials are sent cross-site, so never fall back to a wildcard
    return [_settings.frontend_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its ``X-Request-ID``.

    The client-supplied id is reused when present, otherwise a new one is
    generated; either way it is echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(("/auth/", "/user/")) or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.cookie_secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(user_router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report identity store and session cache reachability.

    An unreachable cache only marks the service degraded: sessions keep
    working through the identity-record fallback.
    """
    from zajel_auth.service.runtime import get_runtime

    runtime = get_runtime()
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

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
        "degraded": not cache_ok,
    }

    if not db_ok:
        status = "unhealthy"
    elif not cache_ok:
        status = "degraded"
    else:
        status = "healthy"
    return {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
