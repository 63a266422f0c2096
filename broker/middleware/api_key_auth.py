"""API key middleware for CLI, SDK and CI callers."""

from __future__ import annotations

import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from broker.config import settings

_EXEMPT_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Require X-API-Key when CONTRACT_BROKER_API_KEY is configured."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or request.url.path in _EXEMPT_PATHS:
            return await call_next(request)

        expected_key = settings.api_key
        if not expected_key:
            if settings.debug:
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"detail": "CONTRACT_BROKER_API_KEY not configured"},
            )

        provided_key = request.headers.get("X-API-Key", "")
        if not provided_key or not secrets.compare_digest(provided_key, expected_key):
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid or missing X-API-Key"},
            )

        return await call_next(request)
