import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend.app.core.limiter import limiter
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.api import availability, checkout
from backend.app.api.deps import get_session
from backend.app.core.locking import RedisProductLockManager, close_lock_manager, get_lock_manager
from backend.app.core.logging import setup_logging, get_logger
from backend.app.core.settings import get_settings
from backend.app.core.metrics import PrometheusMiddleware, get_metrics_response
from backend.app.services.side_effects import drain_background_tasks

# Load and validate settings
try:
    settings = get_settings()
except ValueError as e:
    print(f"Configuration error: {e}", file=sys.stderr)
    sys.exit(1)

# Use JSON format in production
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.is_production
)

logger = get_logger(__name__)

logger.info(
    "Application configuration loaded",
    environment=settings.ENVIRONMENT,
    db_host=settings.DB_HOST,
    lock_backend=settings.RESERVATION_LOCK_BACKEND,
    payments_configured=settings.payments_configured,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.
    - Startup: create the product lock manager
    - Shutdown: let pending notifications finish, close the lock backend
    """
    logger.info("Application starting up", version="1.0.0")
    get_lock_manager()
    yield
    logger.info("Application shutting down")
    await drain_background_tasks(timeout=10)
    await close_lock_manager()


app = FastAPI(title="RentalShop Backend", lifespan=lifespan)

# Use shared limiter (routers use the same instance for @limiter.limit)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS must be added first (runs last on the response)
ALLOWED_ORIGINS = settings.allowed_origins_list
logger.info("CORS configuration", allowed_origins=ALLOWED_ORIGINS, is_production=settings.is_production)
if not ALLOWED_ORIGINS:
    if settings.is_production:
        logger.error("ALLOWED_ORIGINS must be set in production environment")
        raise ValueError("ALLOWED_ORIGINS environment variable is required in production")
    # Development fallback
    ALLOWED_ORIGINS = ["*"]
    logger.warning("CORS: Allowing all origins (development mode). Set ALLOWED_ORIGINS in production!")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(PrometheusMiddleware)

# Storefront API
app.include_router(checkout.router, prefix="/stores", tags=["checkout"])
app.include_router(availability.router, prefix="/stores", tags=["availability"])


@app.get("/")
async def root():
    return {"status": "ok"}


@app.get("/health")
async def health_check(session: AsyncSession = Depends(get_session)):
    """
    Health check endpoint for monitoring and orchestration.
    Checks database connectivity, and Redis when it backs the product locks.
    """
    health_status = {
        "status": "healthy",
        "version": "1.0.0",
        "checks": {
            "database": "ok",
        }
    }

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    lock_manager = get_lock_manager()
    if isinstance(lock_manager, RedisProductLockManager):
        health_status["checks"]["redis"] = "ok"
        try:
            await lock_manager.redis.ping()
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            health_status["status"] = "unhealthy"
            health_status["checks"]["redis"] = f"error: {str(e)}"

    return health_status


@app.get("/metrics")
async def metrics_endpoint(openmetrics: bool = False):
    """Prometheus metrics (OpenMetrics format when ``openmetrics`` is true)."""
    return get_metrics_response(openmetrics=openmetrics)
