"""Contract Broker: service versions, fixtures, mocks, verification and deployments."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from broker.config import settings
from broker.database import close_db, init_db
from broker.middleware.api_key_auth import ApiKeyAuthMiddleware
from broker.routes import contracts, deployments, fixtures, interactions, mock, services, verification
from engine.errors import EngineError
from engine.mock import HandlerCache
from engine.notify import EventDispatcher, WebhookEventSink

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    app.state.handler_cache.clear()
    await close_db()


app = FastAPI(
    title="Contract Broker",
    description="Consumer/provider contract testing: fixtures, mocks, verification and can-i-deploy",
    version=settings.api_version,
    lifespan=lifespan,
)

# Per-app state; engine components are built per request around these
app.state.handler_cache = HandlerCache(ttl_seconds=settings.mock_cache_ttl_seconds)
app.state.events = EventDispatcher(
    [
        WebhookEventSink(settings.notification_webhook_url).notify,
        app.state.handler_cache.on_event,
    ]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.allowed_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ApiKeyAuthMiddleware)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.extra})


app.include_router(services.router, prefix=settings.api_prefix)
app.include_router(fixtures.router, prefix=settings.api_prefix)
app.include_router(mock.router, prefix=settings.api_prefix)
app.include_router(interactions.router, prefix=settings.api_prefix)
app.include_router(contracts.router, prefix=settings.api_prefix)
app.include_router(verification.router, prefix=settings.api_prefix)
app.include_router(deployments.router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "contract-broker", "version": settings.api_version}
