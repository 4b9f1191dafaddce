"""
CaseCompass - FastAPI Application
Evidence, timeline and case-strength companion for NSW family-law and
domestic-violence matters.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from app.core.config import get_settings
from app.core.database import close_db, init_db
from app.core.errors import setup_exception_handlers
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.core.security_headers import SecurityHeadersMiddleware
from app.routers import assistant, auth, case, evidence, health, legal, timeline


# =============================================================================
# Logging Setup
# =============================================================================

def setup_logging():
    """Configure logging from settings."""
    from app.core.logging_config import setup_logging as configure_logging
    settings = get_settings()
    configure_logging(
        level=settings.log_level.upper(),
        json_format=settings.log_json_format,
        log_file=Path(settings.log_file) if settings.log_file else None,
    )


# =============================================================================
# Lifespan (Startup/Shutdown)
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create runtime directories and tables on startup; release the engine on shutdown."""
    settings = get_settings()
    logger = logging.getLogger(__name__)

    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
    await init_db()
    logger.info("Database ready")

    yield

    await close_db()
    logger.info("%s stopped", settings.app_name)


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Application factory.
    Creates and configures the FastAPI application.
    """
    settings = get_settings()
    setup_logging()

    # OpenAPI tags for documentation organization
    tags_metadata = [
        {
            "name": "Health",
            "description": "Liveness, readiness and AI provider health.",
        },
        {
            "name": "Authentication",
            "description": "Session cookies and bearer tokens.",
        },
        {
            "name": "Evidence",
            "description": "Upload or paste evidence, then categorize, analyze and index it.",
        },
        {
            "name": "Timeline",
            "description": "Dated events from your evidence, and gaps in the record.",
        },
        {
            "name": "Case",
            "description": "Case memory, case strength and the milestone plan.",
        },
        {
            "name": "Assistant",
            "description": "Legal assistant answers citing your evidence and NSW law.",
        },
        {
            "name": "Legal Library",
            "description": "NSW legislation sections and cached legal search.",
        },
    ]

    app = FastAPI(
        title=settings.app_name,
        description=settings.app_description,
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.enable_docs else None,
        redoc_url="/api/redoc" if settings.enable_docs else None,
        openapi_url="/api/openapi.json" if settings.enable_docs else None,
        openapi_tags=tags_metadata,
    )

    # =========================================================================
    # Rate Limiting
    # =========================================================================
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # =========================================================================
    # Middleware (order matters - first added = last to run)
    # =========================================================================

    # Security headers (runs last, adds headers to all responses)
    app.add_middleware(
        SecurityHeadersMiddleware,
        enable_hsts=not settings.debug,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id", str(uuid.uuid4()))
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # =========================================================================
    # Exception Handlers
    # =========================================================================
    setup_exception_handlers(app)

    # =========================================================================
    # Register Routers
    # =========================================================================

    # Health (no prefix)
    app.include_router(health.router, tags=["Health"])

    # API routes
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(evidence.router, prefix="/api/evidence", tags=["Evidence"])
    app.include_router(timeline.router, prefix="/api/timeline", tags=["Timeline"])
    app.include_router(case.router, prefix="/api/case", tags=["Case"])
    app.include_router(assistant.router, prefix="/api/assistant", tags=["Assistant"])
    app.include_router(legal.router, prefix="/api/legal", tags=["Legal Library"])

    logging.getLogger(__name__).info("%s application created", settings.app_name)
    return app


# Create the app instance
app = create_app()
