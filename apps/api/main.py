"""
FastAPI application entry point.

This module sets up the FastAPI application with middleware, routers and
the worker-event relay that forwards pipeline events to WebSocket clients.
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from routers import reports, events
from core.config import settings
from core.database import check_db_connection
from core.logging import setup_logging
from core.exceptions import APIException
from core.redis_client import create_async_redis_client, create_redis_client, ping_redis
from services.event_channel import ConnectionManager, EventRelay
import logging
import time

# Setup logging first
setup_logging(service="api")
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="AI Assessor API",
    description="Competency-assessment report generation pipeline",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

app.state.connection_manager = ConnectionManager()
app.state.event_relay = None
app.state.redis = None


@app.on_event("startup")
async def start_event_relay():
    """Subscribe to worker events for this process's WebSocket sessions."""
    app.state.redis = create_redis_client(settings.REDIS_URL)
    if not settings.EVENT_RELAY_ENABLED:
        logger.info("Event relay disabled")
        return
    relay = EventRelay(
        create_async_redis_client(settings.REDIS_URL),
        settings.EVENT_CHANNEL_NAME,
        app.state.connection_manager,
    )
    relay.start()
    app.state.event_relay = relay


@app.on_event("shutdown")
async def stop_event_relay():
    if app.state.event_relay is not None:
        await app.state.event_relay.stop()
        app.state.event_relay = None


# CORS middleware
# Production: set CORS_ORIGINS env var (comma-separated)
# Development: DEBUG=True allows all origins
if settings.DEBUG:
    allowed_origins = ["*"]
elif settings.CORS_ORIGINS:
    allowed_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",")]
else:
    # Fallback for local development
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing information."""
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            exc_info=True,
            extra={"extra_fields": {"method": request.method, "path": request.url.path, "error": str(e)}},
        )
        raise

    process_time = time.time() - start_time
    logger.info(
        f"Response: {request.method} {request.url.path} - {response.status_code}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": round(process_time * 1000, 2),
            }
        },
    )
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


# Error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
            }
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


@app.get("/health")
async def health():
    """
    Health check for load balancers and uptime monitors.

    Returns:
        - 200: database reachable (Redis down reports "degraded")
        - 503: database unavailable
    """
    db_healthy = check_db_connection()
    redis_healthy = ping_redis(app.state.redis)

    checks = {
        "database": "ok" if db_healthy else "unavailable",
        "redis": "ok" if redis_healthy else "unavailable",
    }
    if not db_healthy:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "database": False, "redis": redis_healthy, "checks": checks},
        )
    return {
        "status": "healthy" if redis_healthy else "degraded",
        "database": True,
        "redis": redis_healthy,
        "checks": checks,
    }


app.include_router(reports.router)
app.include_router(events.router)
