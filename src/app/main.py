from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from src.app.admin_routes import router as admin_router
from src.app.channel_routes import router as channel_router
from src.app.config import get_settings
from src.app.dependencies import get_mongo_factory, get_session_orchestrator
from src.app.rate_limit import build_limiter, rate_limit_exceeded_handler
from src.app.routes import router
from src.errors import PlatformError
from src.utils.logging import configure_logging, correlation_id_var

logger = logging.getLogger(__name__)

settings = get_settings()
configure_logging()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex[:12]
        correlation_id_var.set(correlation_id)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s", settings.app_name)
    yield
    if get_session_orchestrator.cache_info().currsize:
        await get_session_orchestrator().shutdown()
    if get_mongo_factory.cache_info().currsize:
        get_mongo_factory().close()
    logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
app.state.limiter = build_limiter(settings)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or ["*"],
    allow_credentials=bool(settings.allowed_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PlatformError)
async def platform_error_handler(request: Request, exc: PlatformError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message, extra={"path": request.url.path})
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "detail": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())},
    )


app.include_router(router)
app.include_router(channel_router)
app.include_router(admin_router)
