"""
Expense routes.

Personal listings only return expenses with no family. Family listings require the caller to
belong to a family and fail with 412 otherwise. Every listing accepts ``page``/``size`` for
offset paging or ``lastExpenseId`` for cursor paging; an unknown ``sortBy`` falls back to the
listing's default field.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from expense_tracker.managers.expense_manager import (
    VALID_SINCE_DATE_SORT_FIELDS,
    VALID_SORT_FIELDS,
    VALID_SYNC_SORT_FIELDS,
    PageRequest,
    expense_manager,
    normalize_page_request,
)
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import security_manager
from expense_tracker.models import PersonalScope
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.routes.expenses.models import ExpensePage, ExpenseRequest, ExpenseResponse, NotifyExpenseRequest
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception
from expense_tracker.utils.logging_utils import log_performance

logger = get_logger(prefix="[Expense Routes]")

router = APIRouter(prefix="/api/expenses", tags=["Expenses"])


def _page(
    page: int = Query(0, ge=0),
    size: int = Query(10),
    sort_by: Optional[str] = Query("date", alias="sortBy"),
    is_ascending: bool = Query(False, alias="isAscending"),
    last_expense_id: Optional[str] = Query(None, alias="lastExpenseId"),
) -> PageRequest:
    return normalize_page_request(page, size, sort_by, is_ascending, last_expense_id, VALID_SORT_FIELDS, "date")


def _sync_page(
    page: int = Query(0, ge=0),
    size: int = Query(10),
    sort_by: Optional[str] = Query("lastModifiedOn", alias="sortBy"),
    is_ascending: bool = Query(True, alias="isAscending"),
    last_expense_id: Optional[str] = Query(None, alias="lastExpenseId"),
) -> PageRequest:
    return normalize_page_request(
        page, size, sort_by, is_ascending, last_expense_id, VALID_SYNC_SORT_FIELDS, "lastModifiedOn"
    )


def _since_date_page(
    page: int = Query(0, ge=0),
    size: int = Query(10),
    sort_by: Optional[str] = Query("date", alias="sortBy"),
    is_ascending: bool = Query(True, alias="isAscending"),
    last_expense_id: Optional[str] = Query(None, alias="lastExpenseId"),
) -> PageRequest:
    return normalize_page_request(
        page, size, sort_by, is_ascending, last_expense_id, VALID_SINCE_DATE_SORT_FIELDS, "date"
    )


def _fail(error: ExpenseTrackerError, operation: str, user: Dict[str, Any]) -> HTTPException:
    logger.warning("%s failed for user %s: %s", operation, user.get("id"), error.message)
    return to_http_exception(error)


@router.post("", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED)
@log_performance("create_expense")
async def create_expense(
    request: Request, payload: ExpenseRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    """Create a personal expense, or a family expense when ``familyId`` is the caller's family."""
    await security_manager.check_rate_limit(request, f"expense_create_{current_user['id']}", rate_limit_requests=60)
    try:
        return await expense_manager.create_expense(current_user, payload.model_dump(exclude_none=True))
    except ExpenseTrackerError as e:
        raise _fail(e, "create_expense", current_user) from e


@router.get("", response_model=ExpensePage)
async def list_expenses(
    page_request: PageRequest = Depends(_page), current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    return await expense_manager.list_expenses(PersonalScope(current_user["id"]), page_request)


@router.get("/family", response_model=ExpensePage)
async def list_family_expenses(
    page_request: PageRequest = Depends(_page), current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        scope = await expense_manager.family_scope_for(current_user)
        return await expense_manager.list_expenses(scope, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_family_expenses", current_user) from e


@router.get("/category/{category}", response_model=ExpensePage)
async def list_by_category(
    category: str, page_request: PageRequest = Depends(_page), current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await expense_manager.list_by_category(current_user, category, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_by_category", current_user) from e


@router.get("/between-dates", response_model=ExpensePage)
async def list_between_dates(
    start_date: str = Query(..., alias="startDate", description="YYYY-MM-DD"),
    end_date: str = Query(..., alias="endDate", description="YYYY-MM-DD"),
    page_request: PageRequest = Depends(_page),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await expense_manager.list_between_dates(current_user, start_date, end_date, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_between_dates", current_user) from e


@router.get("/since", response_model=ExpensePage)
async def list_since(
    last_modified: int = Query(..., alias="lastModified", ge=0, description="Epoch milliseconds"),
    page_request: PageRequest = Depends(_sync_page),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    """Delta sync of the caller's expenses, soft-deleted ones included."""
    return await expense_manager.list_user_since(current_user, last_modified, page_request)


@router.get("/since-date", response_model=ExpensePage)
async def list_since_date(
    date: str = Query(..., description="YYYY-MM-DD"),
    page_request: PageRequest = Depends(_since_date_page),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await expense_manager.list_user_since_date(current_user, date, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_since_date", current_user) from e


@router.get("/family/since", response_model=ExpensePage)
async def list_family_since(
    last_modified: int = Query(..., alias="lastModified", ge=0),
    page_request: PageRequest = Depends(_sync_page),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await expense_manager.list_family_since(current_user, last_modified, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_family_since", current_user) from e


@router.get("/family/since-date", response_model=ExpensePage)
async def list_family_since_date(
    date: str = Query(..., description="YYYY-MM-DD"),
    page_request: PageRequest = Depends(_since_date_page),
    current_user: dict = Depends(get_current_user_dep),
) -> Dict[str, Any]:
    try:
        return await expense_manager.list_family_since_date(current_user, date, page_request)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_family_since_date", current_user) from e


@router.get("/monthly-sum")
async def monthly_sum(
    year: int = Query(...), month: int = Query(...), current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    """Sum of the caller's personal expenses for the month. Family expenses are not counted."""
    try:
        return await expense_manager.monthly_sum(PersonalScope(current_user["id"]), year, month)
    except ExpenseTrackerError as e:
        raise _fail(e, "monthly_sum", current_user) from e


@router.get("/family-monthly-sum")
async def family_monthly_sum(
    year: int = Query(...), month: int = Query(...), current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await expense_manager.family_monthly_sum(current_user, year, month)
    except ExpenseTrackerError as e:
        raise _fail(e, "family_monthly_sum", current_user) from e


@router.post("/notify")
async def notify_expense(
    request: Request, payload: NotifyExpenseRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await security_manager.check_rate_limit(request, f"expense_notify_{current_user['id']}", rate_limit_requests=20)
    try:
        return await expense_manager.notify_expense(current_user, payload.expenseId)
    except ExpenseTrackerError as e:
        raise _fail(e, "notify_expense", current_user) from e


@router.get("/{expense_id}", response_model=ExpenseResponse)
async def get_expense(expense_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await expense_manager.get_expense(current_user, expense_id)
    except ExpenseTrackerError as e:
        raise _fail(e, "get_expense", current_user) from e


@router.put("/{expense_id}", response_model=ExpenseResponse)
async def update_expense(
    expense_id: str, payload: ExpenseRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await expense_manager.update_expense(current_user, expense_id, payload.model_dump(exclude_none=True))
    except ExpenseTrackerError as e:
        raise _fail(e, "update_expense", current_user) from e


@router.delete("/{expense_id}")
async def delete_expense(expense_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await expense_manager.delete_expense(current_user, expense_id)
    except ExpenseTrackerError as e:
        raise _fail(e, "delete_expense", current_user) from e
