"""System routes: API info and health."""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from expense_tracker.database import db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.redis_manager import redis_manager
from expense_tracker.managers.security_manager import security_manager
from expense_tracker.utils.logging_utils import log_error_with_context, log_performance

logger = get_logger(prefix="[System Routes]")

router = APIRouter(tags=["System"])

API_VERSION = "1.0.0"


@router.get("/")
@log_performance("api_root_endpoint")
async def root(request: Request):
    """Basic API information."""
    try:
        await security_manager.check_rate_limit(request, "root", rate_limit_requests=10, rate_limit_period=60)
        return {"message": "Expense Tracker API", "version": API_VERSION, "status": "running"}
    except Exception as e:
        log_error_with_context(
            e, {"operation": "api_root_endpoint", "client_ip": getattr(request.client, "host", "unknown")}
        )
        raise


@router.get("/health")
async def health_check():
    """Database and Redis status. Answers 503 when either is down."""
    db_healthy = await db_manager.health_check()
    redis_healthy = await redis_manager.health_check()
    body = {
        "status": "healthy" if db_healthy and redis_healthy else "unhealthy",
        "database": "connected" if db_healthy else "disconnected",
        "redis": "connected" if redis_healthy else "disconnected",
        "api": "running",
    }
    if not (db_healthy and redis_healthy):
        logger.warning("Health check failed: %s", body)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body
