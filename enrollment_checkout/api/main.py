"""
Main FastAPI application.

Checkout API with:
- CORS configuration
- Error handling (CheckoutError taxonomy rendered with its HTTP status)
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from enrollment_checkout import __version__
from enrollment_checkout.config import get_settings
from enrollment_checkout.container import CheckoutContainer, build_container
from enrollment_checkout.domain.errors import CheckoutError
from enrollment_checkout.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    enrollment_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(container: Optional[CheckoutContainer] = None) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built components (tests); built from settings at
            startup when omitted
    """
    settings = container.settings if container is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        owned = container is None
        app.state.container = container or build_container(settings)
        try:
            await app.state.container.startup()
        except Exception as e:
            logger.error("application_startup_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        if owned:
            await app.state.container.close()

    app = FastAPI(
        title="Enrollment Checkout",
        description=(
            "Order, checkout and payment lifecycle for program enrollments with Stripe "
            "integration. Features: idempotent confirmation, per-order locking, "
            "view cache invalidation and stale payment expiry."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if container is not None:
        app.state.container = container

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "checkout_error",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalServerError",
                    "details": {},
                }
            },
        )

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(enrollment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "enrollment_checkout.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
