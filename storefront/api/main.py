"""
Main FastAPI application.

Storefront checkout and fulfillment API with:
- CORS configuration
- Error handling (StorefrontError -> JSON error body with its HTTP status)
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront import __version__
from storefront.config import get_settings
from storefront.core.exceptions import StorefrontError
from storefront.database.connection import close_db, init_db
from storefront.monitoring.logging import setup_logging

from . import routes
from .routes import admin_router, checkout_router, monitoring_router, order_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates missing tables, loads the gateway registry, and releases
    connections on shutdown.
    """
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    await init_db()
    logger.info("database_initialized")

    gateways = await routes.registry.load()
    if not gateways:
        logger.warning("no_gateways_available")

    yield

    logger.info("application_shutdown")
    await routes.provisioning.close()
    await routes.orchestrator.idempotency.close()
    await close_db()
    logger.info("database_connections_closed")


# Create FastAPI application
app = FastAPI(
    title="Storefront Payments",
    description=(
        "Checkout, payment gateway reconciliation and order fulfillment for the "
        "subscription storefront."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

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

    An incoming X-Request-ID is kept so that traces span the storefront
    frontend and this service.
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


@app.exception_handler(StorefrontError)
async def storefront_exception_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map pipeline errors to their HTTP status."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "request_rejected",
        error_code=exc.error_code,
        error=exc.message,
        status_code=exc.http_status,
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
            }
        },
    )


# Include routers
app.include_router(checkout_router)
app.include_router(order_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": "storefront-payments",
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "gateways": routes.registry.codes(),
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "storefront.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
