from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tutorbridge.api.error_handling import register_exception_handlers
from tutorbridge.api.routes import get_runtime, router
from tutorbridge.config import Settings, get_settings
from tutorbridge.logging import get_logger, set_correlation_id
from tutorbridge.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_credential_sweep(runtime: Runtime, interval: int) -> None:
    """Periodically delete refresh credentials that are both expired and revoked."""
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await runtime.auth.sweep_expired_credentials()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("credential_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("credential_sweep_task_cancelled")
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = getattr(app.state, "runtime", None) or Runtime.from_settings()
    app.state.runtime = runtime
    sweep_task: asyncio.Task | None = None
    interval = runtime.settings.credential_sweep_interval_seconds
    if interval > 0:
        sweep_task = asyncio.create_task(_run_credential_sweep(runtime, interval))
        logger.info("credential_sweep_scheduled", interval_seconds=interval)

    yield

    if sweep_task:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
    await runtime.aclose()


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application; an injected ``runtime`` replaces the settings-built one."""
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="tutorbridge", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID`` (client-supplied or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        checks: Dict[str, Dict[str, Any]] = {}
        runtime = get_runtime(request)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["storage"] = {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="storage")
            checks["storage"] = {"status": "unhealthy", "error": "timeout"}
        except Exception as exc:
            logger.error("health_check_storage_failed", error=str(exc))
            checks["storage"] = {"status": "unhealthy", "error": type(exc).__name__}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
