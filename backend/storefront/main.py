"""
Storefront Backend Application.

FastAPI application exposing cart and order fulfillment.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from loguru import logger

from storefront.api.v1 import router as api_v1_router
from storefront.core.config import settings
from storefront.core.database import close_db, init_db
from storefront.core.errors import ShopError, Unavailable, ValidationError
from storefront.core.logging import setup_logging
from storefront.modules.shop.cart import get_cart_service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting Storefront Backend...")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Cart storage connects lazily; a dead Redis only degrades cart routes
    cart = await get_cart_service()

    logger.info("Storefront Backend started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Storefront Backend...")

    await cart.disconnect()

    # Close database
    await close_db()

    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Storefront Backend Platform

    ## Features

    - **Cart**: Per-owner shopping cart with stock checks
    - **Orders**: Placement with stock reservation, status tracking, cancellation
    - **API**: RESTful API with OpenAPI documentation

    ## Documentation

    - [API Docs](/docs) - Interactive Swagger UI
    - [ReDoc](/redoc) - Alternative documentation
    """,
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> ORJSONResponse:
    """Map fulfillment errors to their HTTP status and error body."""
    if isinstance(exc, Unavailable):
        logger.error(f"{request.method} {request.url.path}: {exc.detail}")
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> ORJSONResponse:
    """Report malformed request bodies in the same shape as service validation errors."""
    messages: dict[str, list[str]] = {}
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body") or "body"
        messages.setdefault(field, []).append(error["msg"])
    return await shop_error_handler(request, ValidationError(messages))


# Include API router
app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


@app.get("/health", tags=["System"])
async def health_check() -> dict:
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "version": settings.app_version,
    }


@app.get("/", tags=["System"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "api": settings.api_v1_prefix,
    }
