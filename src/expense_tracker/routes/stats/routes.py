"""
Statistics routes.

The window is ``startDate``..``endDate`` when both parse as YYYY-MM-DD and are ordered, otherwise ``period``
(current_month, last_month or current_year), defaulting to the current month.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.statistics_manager import MAX_TREND_MONTHS, resolve_window, statistics_manager
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception

logger = get_logger(prefix="[Stats Routes]")

router = APIRouter(prefix="/stats", tags=["Statistics"])


@router.get("/personal/{user_id}")
async def personal_stats(
    user_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    period: Optional[str] = Query(None),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        window = resolve_window(start_date, end_date, period)
        return await statistics_manager.personal_stats(current_user, user_id, window)
    except ExpenseTrackerError as e:
        logger.info("Personal stats rejected for %s: %s", current_user["id"], e.message)
        raise to_http_exception(e) from e


@router.get("/family/{family_id}")
async def family_stats(
    family_id: str,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    period: Optional[str] = Query(None),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        window = resolve_window(start_date, end_date, period)
        return await statistics_manager.family_stats(current_user, family_id, window)
    except ExpenseTrackerError as e:
        logger.info("Family stats rejected for %s: %s", current_user["id"], e.message)
        raise to_http_exception(e) from e


@router.get("/personal/{user_id}/monthly-trend")
async def personal_monthly_trend(
    user_id: str,
    months: int = Query(6, description=f"1-{MAX_TREND_MONTHS}"),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await statistics_manager.personal_monthly_trend(current_user, user_id, months)
    except ExpenseTrackerError as e:
        raise to_http_exception(e) from e


@router.get("/family/{family_id}/monthly-trend")
async def family_monthly_trend(
    family_id: str,
    months: int = Query(6, description=f"1-{MAX_TREND_MONTHS}"),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await statistics_manager.family_monthly_trend(current_user, family_id, months)
    except ExpenseTrackerError as e:
        raise to_http_exception(e) from e
