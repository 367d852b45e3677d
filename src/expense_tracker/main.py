"""
Main application module for the Expense Tracker API.

Sets up the FastAPI application with lifespan management (database, indexes, background
cleanup tasks), request logging, error handlers, routers and Prometheus metrics.
"""

import asyncio
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import uvicorn

from expense_tracker.config import settings
from expense_tracker.database import db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.push_manager import push_manager
from expense_tracker.managers.redis_manager import redis_manager
from expense_tracker.routes import (
    auth_router,
    currencies_router,
    expenses_router,
    family_router,
    join_requests_router,
    main_router,
    notifications_router,
    stats_router,
    users_router,
)
from expense_tracker.routes.periodics.cleanup import (
    periodic_expense_purge,
    periodic_family_cleanup,
    periodic_join_request_cleanup,
)
from expense_tracker.utils.error_handling import (
    ErrorContext,
    ExpenseTrackerError,
    create_user_friendly_error,
    to_http_exception,
)
from expense_tracker.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
    request_id_context,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Connects to MongoDB and verifies indexes before serving, starts the periodic cleanup
    tasks, and tears everything down again on shutdown.
    """
    startup_start_time = time.time()
    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": "Expense Tracker API",
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
        },
    )

    try:
        db_connect_start = time.time()
        logger.info("Initiating database connection...")
        await db_manager.connect()
        log_application_lifecycle(
            "database_connected",
            {
                "connection_duration": f"{time.time() - db_connect_start:.3f}s",
                "database_name": settings.MONGODB_DATABASE,
            },
        )

        indexes_start = time.time()
        logger.info("Creating/verifying database indexes...")
        await db_manager.create_indexes()
        log_application_lifecycle("database_indexes_ready", {"indexes_duration": f"{time.time() - indexes_start:.3f}s"})
    except Exception as e:
        log_application_lifecycle(
            "startup_failed",
            {"error": str(e), "error_type": type(e).__name__, "startup_duration": f"{time.time() - startup_start_time:.3f}s"},
        )
        log_error_with_context(e, {"operation": "application_startup", "phase": "database_connection"})
        raise HTTPException(status_code=503, detail="Service not ready: Database connection failed") from e

    background_tasks = {
        "family_cleanup": asyncio.create_task(periodic_family_cleanup()),
        "join_request_cleanup": asyncio.create_task(periodic_join_request_cleanup()),
        "expense_purge": asyncio.create_task(periodic_expense_purge()),
    }
    log_application_lifecycle(
        "background_tasks_started", {"task_count": len(background_tasks), "tasks": list(background_tasks.keys())}
    )
    logger.info("FastAPI application startup completed in %.3fs", time.time() - startup_start_time)

    yield

    shutdown_start_time = time.time()
    log_application_lifecycle("shutdown_initiated", {"active_background_tasks": len(background_tasks)})

    for task in background_tasks.values():
        task.cancel()
    for task_name, task in background_tasks.items():
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.CancelledError:
            logger.info("Background task %s cancelled successfully", task_name)
        except asyncio.TimeoutError:
            logger.warning("Background task %s cancellation timed out", task_name)

    await push_manager.close()
    await redis_manager.close()
    try:
        await db_manager.disconnect()
    except Exception as e:
        log_error_with_context(e, {"operation": "database_disconnection"})

    log_application_lifecycle(
        "shutdown_completed", {"total_shutdown_duration": f"{time.time() - shutdown_start_time:.3f}s"}
    )


app = FastAPI(
    title="Expense Tracker API",
    description="""
    ## Expense Tracker API

    Personal and family expense tracking.

    ### Features
    - **Authentication**: Firebase sign-in exchanged for app JWTs with refresh rotation
    - **Expenses**: personal and family-shared expenses with offset or cursor paging and delta sync
    - **Families**: create, join by alias, invitations and join requests with a head who approves
    - **Statistics**: totals, category and per-member breakdowns, monthly trends
    - **Notifications**: inbox plus push delivery over FCM
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Authentication", "description": "Login, token refresh and logout"},
        {"name": "Expenses", "description": "Expense CRUD, listings and monthly sums"},
        {"name": "Family", "description": "Family membership workflow"},
        {"name": "Join Requests", "description": "Requests to join a family"},
        {"name": "Notifications", "description": "Notification inbox"},
        {"name": "Statistics", "description": "Expense statistics"},
        {"name": "Users", "description": "Profile and push devices"},
        {"name": "Currencies", "description": "Currency reference data"},
        {"name": "System", "description": "Health and API info"},
    ],
)


@app.exception_handler(ExpenseTrackerError)
async def expense_tracker_error_handler(request: Request, exc: ExpenseTrackerError):
    """Domain errors that escaped a route without being translated."""
    if exc.status_code >= 500:
        log_error_with_context(exc, {"path": request.url.path, "error_code": exc.error_code})
    http_exc = to_http_exception(exc)
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    context = ErrorContext(
        operation=f"{request.method} {request.url.path}",
        request_id=request_id_context.get() or None,
        ip_address=request.client.host if request.client else None,
    )
    log_error_with_context(exc, context.to_dict())
    return JSONResponse(status_code=500, content=create_user_friendly_error(exc, context))


logger.info("Adding middleware...")
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
log_application_lifecycle("middleware_configured", {"middleware": ["RequestLoggingMiddleware", "CORSMiddleware"]})

routers_config = [
    ("main", main_router, "API info and health checks"),
    ("auth", auth_router, "Authentication endpoints"),
    ("expenses", expenses_router, "Expense endpoints"),
    ("family", family_router, "Family membership endpoints"),
    ("join_requests", join_requests_router, "Join request endpoints"),
    ("notifications", notifications_router, "Notification inbox endpoints"),
    ("stats", stats_router, "Statistics endpoints"),
    ("users", users_router, "Profile and device endpoints"),
    ("currencies", currencies_router, "Currency reference endpoints"),
]

included_routers = []
for router_name, router, description in routers_config:
    app.include_router(router)
    included_routers.append({"name": router_name, "description": description})
    logger.debug("Included %s router: %s", router_name, description)

log_application_lifecycle(
    "routers_configured", {"total_routers": len(routers_config), "routers": [r["name"] for r in included_routers]}
)

try:
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        should_instrument_requests_inprogress=True,
    )
    instrumentator.instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")
    log_application_lifecycle("prometheus_configured", {"metrics_endpoint": "/metrics"})
except Exception as e:
    # Continue without metrics
    log_error_with_context(e, {"operation": "prometheus_setup"})


def run() -> None:
    uvicorn.run(
        "expense_tracker.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG, log_level="info"
    )


if __name__ == "__main__":
    run()
