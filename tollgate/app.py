from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tollgate.api.error_handling import register_exception_handlers
from tollgate.api.routes import router
from tollgate.config import get_settings
from tollgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Periodically drop idle sessions; expiry itself is enforced on each request."""
    from tollgate.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().sessions.sweep_expired)
        except Exception as exc:
            logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )
    logger.info(
        "session_sweep_started",
        interval_seconds=runtime.settings.session_sweep_interval_seconds,
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Tollgate", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID taken from X-Request-ID or generated."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": runtime.settings.store_backend.value}
    if runtime.lockout_store is not None:
        try:
            await asyncio.to_thread(runtime.lockout_store.verify_connection)
            checks["redis"] = "ok"
        except Exception as exc:
            logger.warning("health_redis_failed", error=str(exc))
            checks["redis"] = "unavailable"
    status = "ok" if checks.get("redis", "ok") == "ok" else "degraded"
    return {"status": status, "version": __version__, "checks": checks}
