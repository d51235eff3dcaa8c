from __future__ import annotations

import logging

import jwt
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from src.app.config import Settings, get_settings

logger = logging.getLogger(__name__)


def tenant_rate_key(request: Request) -> str:
    """Bucket requests by the bearer token's tenant, falling back to the client address."""
    settings = get_settings()
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        except jwt.InvalidTokenError:
            claims = {}
        tenant_id = claims.get("tenant_id") or claims.get("sub")
        if tenant_id:
            return f"tenant:{tenant_id}"
    return get_remote_address(request)


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(key_func=tenant_rate_key, default_limits=[settings.api_rate_limit])


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    # SlowAPIMiddleware calls this synchronously.
    logger.info("Rate limit exceeded", extra={"path": request.url.path, "limit": str(exc.detail)})
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "detail": f"Too many requests: {exc.detail}"},
        headers={"Retry-After": str(exc.limit.limit.get_expiry())},
    )
