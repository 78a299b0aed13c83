import logging

from fastapi import APIRouter
from sqlalchemy import text

from app.database import engine
from app.utils.cache import cache_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get(
    "",
    summary="Health check",
    description="Basic liveness check."
)
def health_check():
    """Simple health check."""
    return {"ok": True}


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if all services (DB, Redis) are ready."
)
def readiness_check():
    """
    Readiness check for all dependencies.
    
    Returns status of:
    - Database connection
    - Redis connection (skipped when caching is disabled)
    """
    checks = {
        "database": False,
        "redis": False
    }
    
    # Check database
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            checks["database"] = True
    except Exception as e:
        logger.warning(f"Database readiness check failed: {e}")
        checks["database_error"] = "unreachable"
    
    # Check Redis
    if not cache_service.enabled:
        checks["redis"] = True
        checks["redis_status"] = "disabled"
    else:
        try:
            cache_service.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning(f"Redis readiness check failed: {e}")
            checks["redis_error"] = "unreachable"
    
    # Determine overall status
    all_healthy = all([checks["database"], checks["redis"]])
    
    return {
        "status": "ready" if all_healthy else "not_ready",
        "checks": checks
    }
