"""Entry point for the call relay bridge service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_registry
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from calls.errors import CallRelayError, ProviderError
from config.settings import get_settings

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_registry()
    sweeper = asyncio.create_task(
        registry.run_eviction(settings.session_sweep_interval_seconds),
        name="session_eviction",
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
for noisy in ("twilio.http_client", "httpx", "websockets"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

app = FastAPI(
    title="Call Relay Bridge",
    description="Places outbound calls and bridges them to a conversational voice AI agent.",
    lifespan=lifespan,
)


@app.exception_handler(CallRelayError)
async def call_relay_error_handler(request: Request, exc: CallRelayError) -> JSONResponse:
    code = exc.code if isinstance(exc, ProviderError) else None
    if exc.status_code >= 500:
        LOGGER.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__, "code": code},
    )


app.include_router(api_router, prefix="/api")
app.include_router(twilio_router, prefix="/api")
