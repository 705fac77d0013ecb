from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import build_rate_limiter, get_rate_limiter, rate_limited
from .envelope import ErrorEnvelope, build_error_envelope, new_request_id
from .rate_limit import MultiTierRateLimiter
from .routers import limits as limits_router


logger = logging.getLogger("quota-gate")


async def _sweep_forever(limiter: MultiTierRateLimiter, interval_s: float) -> None:
    """Periodically drop expired window records so idle keys do not accumulate."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            removed = limiter.cleanup()
        except Exception:
            logger.exception("rate limit cleanup sweep failed")
            continue
        if removed:
            logger.debug("cleanup sweep removed %d record(s)", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the limiter on startup, run the cleanup sweeper, stop it on shutdown."""
    settings = get_settings()
    # A limiter assigned before startup (tests, embedding hosts) is kept as-is.
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = build_rate_limiter(settings)

    sweeper: Optional[asyncio.Task] = None
    if settings.cleanup_interval_s > 0:
        sweeper = asyncio.create_task(_sweep_forever(app.state.rate_limiter, settings.cleanup_interval_s))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper


def create_app() -> FastAPI:
    """Build a FastAPI app; the limiter itself is created in the lifespan."""
    application = FastAPI(title="Quota Gate", version="0.1.0", lifespan=lifespan)
    application.state.rate_limiter = None

    # CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
    cors_origins = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(limits_router.router)

    @application.exception_handler(ErrorEnvelope)
    async def _error_envelope_handler(request: Request, exc: ErrorEnvelope) -> JSONResponse:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            service=get_settings().service_name,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
        return JSONResponse(status_code=status_code, content=body, headers=exc.headers)

    @application.get("/health")
    async def health(limiter: MultiTierRateLimiter = Depends(get_rate_limiter)) -> Dict[str, Any]:
        """
        Simple health check listing the registered operation classes.
        """
        settings = get_settings()
        return {
            "status": "ok",
            "service": settings.service_name,
            "rate_limit_enabled": settings.enable_rate_limit,
            "operation_classes": limiter.operation_classes,
        }

    @application.get("/tiers", dependencies=[Depends(rate_limited("requests"))])
    async def tiers(limiter: MultiTierRateLimiter = Depends(get_rate_limiter)) -> Dict[str, Any]:
        """
        Effective tier configuration. Charged against the caller's "requests" quota.
        """
        return {
            "tiers": {
                name: {"window_ms": config.window_ms, "max_requests": config.max_requests}
                for name, config in limiter.configs.items()
            }
        }

    return application


app = create_app()


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
