from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from identitygate.api.error_handling import register_exception_handlers
from identitygate.api.routes import router
from identitygate.config import Settings
from identitygate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_purge_task: asyncio.Task | None = None


async def _run_magic_purge(interval_seconds: int) -> None:
    """Background loop that drops used and expired magic tokens."""
    from identitygate.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(get_runtime().auth.purge_expired_magic_tokens)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("magic_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("magic_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _purge_task
    from identitygate.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.magic_purge_interval_seconds > 0:
        _purge_task = asyncio.create_task(
            _run_magic_purge(runtime.settings.magic_purge_interval_seconds)
        )

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="IdentityGate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Credentials are always allowed, so never fall back to a wildcard.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh id) to the logging context and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    # The embedded shell frames this origin, so X-Frame-Options stays unset.
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and cache reachability.

    Each probe runs in a worker thread with a short timeout so a hung
    dependency cannot stall the health endpoint itself.
    """
    from identitygate.service.runtime import get_runtime

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

    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        store_ok = await _run_bounded("store", _db_probe)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}
    else:
        store_ok = True
        checks["store"] = {"status": "healthy", "type": "memory"}

    cache_ok = True
    if runtime.cache is not None:
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}
    else:
        checks["cache"] = {"status": "not_configured"}

    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
