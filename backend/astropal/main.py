"""
Astropal - FastAPI Application

Main entry point for the backend API.
Hosts the Stripe webhook endpoints, billing information, and the
scheduler for trial maintenance and daily newsletter generation.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from astropal.config.settings import Settings, get_settings
from astropal.infrastructure.exceptions import (
    AstropalError,
    AuthorizationError,
    NotFoundError,
)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    from astropal.api.dependencies import get_job_scheduler, get_key_value_store
    from astropal.infrastructure.db.database import close_db, init_db

    # Startup
    logger.info(f"Astropal Backend starting in {settings.environment} mode...")

    await init_db()
    logger.info("Database connection pool initialized")

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = get_job_scheduler()
        scheduler.start()

    yield

    # Shutdown
    if scheduler is not None:
        scheduler.shutdown()

    try:
        await get_key_value_store().close()
    except Exception as e:
        logger.warning(f"Key/value store shutdown error: {e}")

    await close_db()
    logger.info("Database connection pool closed")
    logger.info("Astropal Backend shutting down...")


app = FastAPI(
    title="Astropal",
    description="Billing and newsletter content backend for Astropal",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    """Handle authorization errors."""
    return JSONResponse(
        status_code=403,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(AstropalError)
async def general_error_handler(request: Request, exc: AstropalError):
    """Handle all other application errors."""
    logger.error(f"Unhandled application error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "astropal"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Astropal API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from astropal.api.routes import admin, billing, webhooks

app.include_router(webhooks.router, tags=["Webhooks"])
app.include_router(billing.router)
app.include_router(admin.router)
