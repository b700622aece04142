from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.config import Settings
from warden.logging import bind_request_context, get_logger

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_maintenance_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start audit delivery and maintenance; flush the audit buffer on shutdown."""
    global _maintenance_task
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.gateway.start()
    _maintenance_task = asyncio.create_task(
        _run_maintenance(runtime.gateway, runtime.settings.maintenance_interval_seconds)
    )

    yield

    if _maintenance_task:
        _maintenance_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _maintenance_task
        _maintenance_task = None
    try:
        await runtime.gateway.stop()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


app = FastAPI(title="Warden", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Tenant-ID", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID and echo it in ``X-Request-ID``."""
    correlation_id = bind_request_context(
        request.headers.get("X-Request-ID"), tenant_id=request.headers.get("X-Tenant-ID")
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Report store and distributed cache reachability plus audit lane stats."""
    from warden.service.runtime import get_runtime

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
            logger.error(f"health_check_{label}_failed", error_type=type(exc).__name__)
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        # The distributed layer degrades to the store, so it never fails the health check
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["audit"] = {"status": "healthy", **runtime.gateway.audit.stats}
    checks["cache"] = {
        "status": "healthy",
        "pending_invalidations": len(runtime.gateway.cache.pending_invalidations),
    }

    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


async def _run_maintenance(gateway, interval_seconds: int) -> None:
    """Background loop: retention sweep and parked distributed invalidations."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                result = await gateway.run_maintenance()
                logger.debug("maintenance_completed", **result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "maintenance_failed", error=str(exc), error_type=type(exc).__name__
                )
    except asyncio.CancelledError:
        logger.info("maintenance_task_cancelled")


def create_app() -> FastAPI:
    return app
