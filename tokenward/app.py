from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from tokenward.api.error_handling import register_exception_handlers
from tokenward.api.routes import router
from tokenward.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    from tokenward.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.token_cleanup_enabled:
            await runtime.cleanup.start()
            logger.info("token_cleanup_started_on_startup")
    except Exception as exc:
        logger.error("startup_token_cleanup_failed", error=sanitize_error_message(str(exc)))

    yield

    # Shutdown
    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=sanitize_error_message(str(exc)))


app = FastAPI(title="tokenward", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Add a correlation ID to each request for tracing.

    The ID is taken from the X-Request-ID header when the client sends one,
    otherwise generated. It is bound into log context and echoed back in the
    X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Responses carry refresh tokens; never let a proxy cache them
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Health check reporting store connectivity and sweeper state."""
    from tokenward.service.runtime import get_runtime

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
            logger.error(
                f"health_check_{label}_failed", error=sanitize_error_message(str(exc))
            )
        return False

    runtime = get_runtime()
    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    checks["token_cleanup"] = {
        "status": "running" if runtime.cleanup.running else "stopped",
        "runs": runtime.cleanup.runs,
    }

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(identity_resolver=None) -> FastAPI:
    """Return the app, optionally wiring the host's identity resolver.

    ``identity_resolver(authorization_header) -> user_id | None`` decides who
    the caller of the session routes is; see ``configure_runtime``.
    """
    if identity_resolver is not None:
        from tokenward.service.runtime import configure_runtime

        configure_runtime(identity_resolver=identity_resolver)
    return app
