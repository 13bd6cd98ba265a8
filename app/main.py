"""Main FastAPI application entry point.

Provides CORS, health endpoints and the LMS resources (users, categories,
courses, lessons, enrollments, purchases) on top of the single-table store.
"""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
from datetime import datetime, timezone

from app.db.config import StoreConfig, create_session_factory, create_store_engine, init_store
from app.db.errors import (
    ConstraintViolation,
    InvalidIdentity,
    MalformedItem,
    NotFound,
    StoreError,
    StoreUnavailable,
    TransactionConflict,
    UnknownEntityType,
)
from app.db.executor import AccessPatternExecutor

# Import routers
from app.routers import categories, courses, enrollments, health, users

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Application metadata
APP_NAME = "LMS Single-Table Store API"
VERSION = "1.0.0"
DESCRIPTION = """
LMS backend over a single-table item store

## Features

* **Health Check**: Monitor application and store status
* **Users**: Profiles with unique e-mail addresses and soft delete
* **Catalog**: Category tree, courses and ordered lessons
* **Enrollments**: Atomic enroll-and-charge, purchase flow and refunds
* **Progress**: Per-lesson progress rolled up into the enrollment
"""

# Initialize FastAPI app
app = FastAPI(
    title=APP_NAME,
    description=DESCRIPTION,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware configuration
cors_origins = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Store error kinds and the HTTP status each one maps to
ERROR_STATUS = {
    NotFound: 404,
    InvalidIdentity: 400,
    ConstraintViolation: 409,
    TransactionConflict: 409,
    StoreUnavailable: 503,
    UnknownEntityType: 500,
    MalformedItem: 500,
}


def _error_response(request, status_code: int, error, **extra) -> JSONResponse:
    content = {
        "success": False,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": str(request.url)
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


# Global exception handlers


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with consistent error format"""
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(StoreError)
async def store_error_handler(request, exc):
    """Translate access-layer errors into HTTP statuses"""
    status_code = next(
        (code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)),
        500,
    )
    if status_code >= 500:
        logger.error("Store error on %s: %s: %s", request.url.path, exc.__class__.__name__, exc)
        error = "Store temporarily unavailable" if status_code == 503 else "Stored data could not be read"
    else:
        error = str(exc)
    extra = {"kind": exc.__class__.__name__}
    if isinstance(exc, TransactionConflict):
        extra["reasons"] = exc.reasons
    return _error_response(request, status_code, error, **extra)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal server error")

# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["Health"])
app.include_router(users.router, prefix="/api/v1")
app.include_router(categories.router, prefix="/api/v1")
app.include_router(courses.router, prefix="/api/v1")
app.include_router(enrollments.router, prefix="/api/v1")

# Root endpoint


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "name": APP_NAME,
        "version": VERSION,
        "status": "running",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "docs": "/docs",
        "health": "/api/v1/health"
    }

# Application startup event


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(f"Starting {APP_NAME} v{VERSION}")
    logger.info(f"Environment: {os.getenv('ENVIRONMENT', 'development')}")
    logger.info(f"CORS Origins: {cors_origins}")
    config = StoreConfig.from_env()
    engine = create_store_engine(config)
    # AUTO_MIGRATE=false leaves the schema to 'alembic upgrade head'
    if os.getenv("AUTO_MIGRATE", "true").lower() in {"1", "true", "yes"}:
        await init_store(engine)
        logger.info("Item table ensured")
    app.state.engine = engine
    app.state.executor = AccessPatternExecutor(config, create_session_factory(engine))
    logger.info(
        "Store ready (max_attempts=%s, page_size=%s)",
        config.max_attempts,
        config.page_size,
    )

# Application shutdown event


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info(f"Shutting down {APP_NAME}")
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=True,
        log_level="info"
    )
