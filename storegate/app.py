from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from storegate.api.error_handling import register_exception_handlers
from storegate.api.gatekeeper import gatekeeper
from storegate.api.routes import router
from storegate.logging import get_logger, set_correlation_id
from storegate.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving and release it on shutdown."""
    global _sweep_task
    # Startup fails fast on invalid configuration or an unusable store
    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_expiry_sweep(runtime.settings.expiry_sweep_interval_seconds)
    )
    logger.info("startup_complete", version=__version__)

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


app = FastAPI(title="Storegate", version=__version__, lifespan=lifespan)

register_exception_handlers(app)
app.include_router(router)

# Starlette runs the last registered middleware first, so the correlation id
# is in place before the gatekeeper logs anything.
app.middleware("http")(gatekeeper)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to the request and echo it as X-Request-ID.

    The id comes from the client's X-Request-ID header when present,
    otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/api/health")
async def health():
    """Liveness plus a bounded database check; 503 when the store is unreachable."""
    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    body: Dict[str, Any] = {
        "status": "healthy" if db_ok else "unhealthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "database": "connected" if db_ok else "disconnected",
            "server": "running",
        },
        "version": __version__,
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


async def _run_expiry_sweep(interval_seconds: int) -> None:
    """Background loop removing expired sessions, tokens and counters."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                counts = await asyncio.to_thread(get_runtime().sweep_expired)
                if any(counts.values()):
                    logger.info("expiry_sweep_complete", **counts)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expiry_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("expiry_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app
