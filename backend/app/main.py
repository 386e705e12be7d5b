"""ScalingAd Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from scalingad.logging_config import get_logger, setup_logging

from .config import get_settings
from .errors import register_error_handlers
from .rate_limit import limiter
from .routes import agencies_router, jobs_router, webhooks_router

logger = get_logger("backend")

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    setup_logging("DEBUG" if settings.debug else "INFO")
    logger.info(
        f"Starting ScalingAd Backend API (debug={settings.debug}, "
        f"charge_model={settings.charge_model})"
    )
    yield
    # Shutdown
    logger.info("Shutting down ScalingAd Backend API")


app = FastAPI(
    title="ScalingAd Backend API",
    description="Escrow-backed job payments between brands and agencies",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Escrow error mapping
register_error_handlers(app)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs_router, prefix=API_PREFIX)
app.include_router(agencies_router, prefix=API_PREFIX)
app.include_router(webhooks_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "scalingad-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
def health():
    """Detailed health check with actual database verification."""
    from .database import get_storage

    db_status = "connected"
    try:
        get_storage(get_settings()).list_jobs(limit=1)
    except Exception as e:
        logger.warning(f"Health check failed: {e}")
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }
