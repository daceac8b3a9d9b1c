"""
FastAPI application entry point.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calldesk.calls.router import router as calls_router
from calldesk.config import get_settings
from calldesk.shared.database import get_database_manager
from calldesk.shared.exceptions import (
    AppError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from calldesk.shared.logging import correlation_id_var, get_logger, setup_logging
from calldesk.telephony.factory import get_telephony_provider
from calldesk.telephony.interface import TelephonyProviderError
from calldesk.telephony.webhooks.router import calls_webhook_router
from calldesk.telephony.webhooks.router import router as telephony_webhooks_router

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    db_manager = get_database_manager()
    if settings.database_auto_create:
        await db_manager.create_all()
        logger.info("Database tables ensured")

    yield

    logger.info("Shutting down application")
    get_telephony_provider().close()
    await db_manager.close()
    logger.info("Application shutdown complete")


def _error_body(code: str, exc: AppError) -> dict:
    detail: dict = {"code": code, "message": exc.message}
    if exc.details:
        detail["details"] = exc.details
    return {"detail": detail}


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Calldesk API",
        description="Call lifecycle service for the CRM call dashboard",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", exc))

    @app.exception_handler(UnauthorizedError)
    async def _unauthorized(_: Request, exc: UnauthorizedError) -> JSONResponse:
        return JSONResponse(status_code=401, content=_error_body("UNAUTHORIZED", exc))

    @app.exception_handler(ForbiddenError)
    async def _forbidden(_: Request, exc: ForbiddenError) -> JSONResponse:
        return JSONResponse(status_code=403, content=_error_body("FORBIDDEN", exc))

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content=_error_body("NOT_FOUND", exc))

    @app.exception_handler(TelephonyProviderError)
    async def _provider_error(_: Request, exc: TelephonyProviderError) -> JSONResponse:
        logger.error(
            "Telephony provider error",
            extra={"error_code": exc.error_code, "error": str(exc)},
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "detail": {
                    "code": "PROVIDER_ERROR",
                    "message": str(exc),
                    "providerCode": exc.error_code,
                }
            },
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        token = correlation_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(calls_webhook_router)
    app.include_router(calls_router)
    app.include_router(telephony_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
