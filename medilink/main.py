from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
import asyncio
import time
import logging
import os

from .api.v1.appointments import router as appointments_router
from .api.v1.notifications import router as notifications_router
from .api.v1.triage import router as triage_router
from .api.v1.ws import router as ws_router
from .core.config import settings
from .core.database import SessionLocal, init_db
from .core.exceptions import MedilinkError
from .services.container import build_services

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Symptom triage, doctor matching, slot booking and live notifications",
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Middleware setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Only add TrustedHostMiddleware in production, not in testing
if not os.getenv("TESTING"):
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"]
    )

# Custom middleware for request logging and timing
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Log request
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.4f}s"
    )

    return response

# Exception handlers
@app.exception_handler(MedilinkError)
async def medilink_error_handler(request: Request, exc: MedilinkError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": type(exc).__name__,
            "detail": exc.detail
        }
    )

@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "detail": getattr(exc, "detail", None) or "The requested resource was not found",
            "path": str(request.url.path)
        }
    )

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Internal server error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": "An unexpected error occurred"
        }
    )

# Include routers
app.include_router(triage_router, prefix="/api/v1")
app.include_router(appointments_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")
app.include_router(ws_router, prefix="/api/v1")


async def purge_expired_notifications(interval: int):
    """Periodically delete notifications past their expiry."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(app.state.services.dispatcher.purge_expired)
        except Exception:
            logger.exception("Notification purge failed")

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    logger.info("Starting Medilink...")

    # Check database connection
    db_url = settings.get_database_url
    db_type = "PostgreSQL" if "postgresql" in db_url else "SQLite" if "sqlite" in db_url else "Unknown"
    logger.info(f"Using {db_type} database")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    # Services may already be wired, e.g. by the test suite
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(SessionLocal)

    try:
        await run_in_threadpool(app.state.services.dispatcher.purge_expired)
    except Exception:
        logger.exception("Notification purge failed")

    app.state.purge_task = asyncio.create_task(
        purge_expired_notifications(settings.NOTIFICATION_PURGE_INTERVAL_SECONDS)
    )

    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    logger.info("Shutting down Medilink...")
    task = getattr(app.state, "purge_task", None)
    if task is not None:
        task.cancel()

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    services = getattr(app.state, "services", None)
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.VERSION,
        "connections": services.registry.statistics() if services else None
    }

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to the Medilink API",
        "version": settings.VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health"
    }

# API Info endpoint
@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "endpoints": {
            "triage": "/api/v1/triage",
            "appointments": "/api/v1/appointments",
            "notifications": "/api/v1/notifications",
            "websocket": "/api/v1/ws",
            "docs": "/docs",
            "openapi": "/api/v1/openapi.json"
        }
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "medilink.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
