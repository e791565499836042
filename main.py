import time
import traceback
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.core.config import settings
from app.core.logging_config import setup_logging, get_logger, RequestLogger
from app.core.middleware import RequestIdMiddleware, SecurityHeadersMiddleware, get_request_id
from app.core.rate_limit import limiter
from app.db.database import Base, engine
from app.api.routes import auth, messages, broadcasts

# Initialize logging first (auto-determines level based on environment)
setup_logging(
    app_name="carbontrack",
    log_level=settings.log_level,  # Empty = auto (DEBUG in dev, WARNING in prod)
    environment=settings.environment,
    enable_console=True,
    enable_file=settings.log_to_file,
)

logger = get_logger(__name__)
request_logger = RequestLogger(get_logger("carbontrack.requests"))

logger.info("Starting CarbonTrack messaging service...")

# Create database tables
from app.models import User, Message, Broadcast, AuditLog, ErrorLog  # noqa: F401, E402
Base.metadata.create_all(bind=engine)
logger.info("Database tables created/verified")


app = FastAPI(
    title=settings.app_name,
    description="Admin broadcast messaging with deferred email escalation",
    version="0.1.0",
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Global exception handler — logs full tracebacks for 500 errors
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch all unhandled exceptions, log full traceback, return 500."""
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path} "
        f"(rid={get_request_id(request)}): {exc}\n"
        f"{traceback.format_exc()}"
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests with timing."""
    start_time = time.time()
    client_ip = request.client.host if request.client else "unknown"

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000
    request_logger.log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
        client_ip=client_ip,
        user_id=getattr(request.state, "user_id", None),
        request_id=get_request_id(request),
    )
    return response


# CORS middleware — restrict origins (never use wildcard with credentials)
if settings.allowed_origins:
    cors_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
elif settings.environment == "production":
    cors_origins = [settings.frontend_url]
else:
    cors_origins = ["http://localhost:5173", "http://localhost:8000", settings.frontend_url]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

# Outermost, so every inner layer (including request logging) sees the id
app.add_middleware(RequestIdMiddleware)

app.include_router(auth.router, prefix="/api")
app.include_router(messages.router, prefix="/api")
app.include_router(broadcasts.router, prefix="/api")

logger.info("API routes registered at /api")


@app.get("/health")
def health_check():
    logger.debug("Health check requested")
    return {"status": "healthy"}


@app.get("/")
def root():
    return {"message": "CarbonTrack messaging API", "app": settings.app_name, "docs": "/docs"}


@app.on_event("startup")
async def startup_event():
    from app.services.scheduler import register_jobs, start_scheduler

    register_jobs()
    start_scheduler()
    logger.info("CarbonTrack messaging service started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    from app.services.scheduler import stop_scheduler
    stop_scheduler()
    logger.info("CarbonTrack messaging service shutting down")
