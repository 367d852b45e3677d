"""
Expense access, validation and retrieval.

Authorization rules:
- read: the owner; or a viewer whose current familyId equals the owner's current familyId;
  or a viewer whose current familyId equals the expense's familyId
- update: the owner only
- delete: the owner, or a current member of the expense's family

Retrieval modes share one pagination pipeline (``PageRequest`` + ``paginate``):
offset pagination through ``page``/``size`` for the first page, keyset pagination through
``lastExpenseId`` for continuation. When a cursor is given it wins over ``page``. Keyset
ordering is (sort field, expenseId) so equal sort values never skip or repeat items.

Soft-deleted expenses are hidden from every listing except the "since" sync modes, which
return them so clients can reconcile deletions.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple
import uuid

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from expense_tracker.config import settings
from expense_tracker.database import db_manager as default_db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.notification_manager import (
    NotificationManager,
    display_name,
    notification_manager as default_notification_manager,
)
from expense_tracker.managers.push_manager import PushMessage
from expense_tracker.models import (
    VALID_CATEGORIES,
    FamilyScope,
    NotificationType,
    PersonalScope,
    Scope,
    is_blank,
    now_millis,
    to_millis,
)
from expense_tracker.utils.error_handling import (
    AccessDeniedError,
    CreationError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
)

logger = get_logger(prefix="[ExpenseManager]")

EXPENSES_COLLECTION = "expenses"
USERS_COLLECTION = "users"
FAMILIES_COLLECTION = "families"

MAX_DESCRIPTION_LENGTH = 500
MAX_AMOUNT_STRING_LENGTH = 10
MIN_ID_LENGTH = 3
ONE_DAY_MILLIS = 24 * 60 * 60 * 1000
TEN_YEARS_MILLIS = 10 * 365 * ONE_DAY_MILLIS
SUSPICIOUS_PATTERNS = ("<script", "javascript:", "onerror=", "onload=")
MIN_SUM_YEAR = 2000

VALID_SORT_FIELDS = (
    "expenseCreatedOn",
    "lastModifiedOn",
    "amount",
    "category",
    "description",
    "date",
    "userId",
    "expenseId",
)
VALID_SYNC_SORT_FIELDS = ("lastModifiedOn", "expenseCreatedOn", "date")
VALID_SINCE_DATE_SORT_FIELDS = ("date", "lastModifiedOn", "expenseCreatedOn", "amount")

NOT_DELETED = {"deleted": {"$ne": True}}


class ExpenseNotFound(NotFoundError):
    def __init__(self, message: str):
        super().__init__(message, error_code="EXPENSE_NOT_FOUND")


class ExpenseAccessDenied(AccessDeniedError):
    def __init__(self, message: str = "You don't have permission to view this expense"):
        super().__init__(message, error_code="ACCESS_DENIED")


class ExpenseValidationError(ValidationError):
    def __init__(self, errors: List[str], message: str = "Expense validation failed"):
        super().__init__(message, errors=errors, error_code="VALIDATION_ERROR")


class FamilyPreconditionFailed(PreconditionFailedError):
    def __init__(self, message: str, error: str):
        super().__init__(message, error_code="PRECONDITION_FAILED", context={"reason": error})

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["reason"] = self.context["reason"]
        return detail


# --- Validation ---


def validate_expense_payload(payload: Dict[str, Any], currency: str = "", now: Optional[int] = None) -> List[str]:
    """
    Collect every violation in an expense payload.

    An empty list means the payload is valid. Categories are compared case-insensitively.
    """
    errors: List[str] = []
    now = now if now is not None else now_millis()
    max_amount = settings.EXPENSE_MAX_AMOUNT

    amount = payload.get("amount")
    if amount is None or not math.isfinite(amount) or amount <= 0:
        errors.append("Amount is required and must be greater than 0")
    elif amount > max_amount:
        errors.append(f"Amount cannot exceed {currency}{int(max_amount)}")
    elif len(repr(float(amount))) > MAX_AMOUNT_STRING_LENGTH:
        errors.append("Amount value is too large")

    category = payload.get("category")
    if is_blank(category):
        errors.append("Category is required")
    elif category.strip().upper() not in VALID_CATEGORIES:
        errors.append(f"Category must be one of: {', '.join(VALID_CATEGORIES)}")

    description = payload.get("description") or ""
    if len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
    lowered = description.lower()
    if any(pattern in lowered for pattern in SUSPICIOUS_PATTERNS):
        errors.append("Description contains invalid characters")

    expense_date = payload.get("date")
    if expense_date is None or expense_date <= 0:
        errors.append("Date is required and must be a valid timestamp")
    elif expense_date > now + ONE_DAY_MILLIS:
        errors.append("Date cannot be more than 1 day in the future")
    elif expense_date < now - TEN_YEARS_MILLIS:
        errors.append("Date cannot be more than 10 years in the past")

    user_id = payload.get("userId")
    if not is_blank(user_id) and len(user_id) < MIN_ID_LENGTH:
        errors.append("ExpenseUser ID format is invalid")
    family_id = payload.get("familyId")
    if not is_blank(family_id) and len(family_id) < MIN_ID_LENGTH:
        errors.append("Family ID format is invalid")
    return errors


def parse_day(value: str) -> date:
    """Parse a YYYY-MM-DD string."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as e:
        raise ValidationError(
            "Invalid date format. Use YYYY-MM-DD format", errors=[f"Date parsing error: {e}"]
        ) from e


def day_start_millis(day: date) -> int:
    return to_millis(datetime(day.year, day.month, day.day, tzinfo=timezone.utc))


def day_end_millis(day: date) -> int:
    return day_start_millis(day + timedelta(days=1)) - 1


def month_range_millis(year: int, month: int) -> Tuple[int, int]:
    """Inclusive [start, end] of a calendar month in UTC epoch millis."""
    last_day = calendar.monthrange(year, month)[1]
    return day_start_millis(date(year, month, 1)), day_end_millis(date(year, month, last_day))


def validate_month(year: int, month: int) -> None:
    if not 1 <= month <= 12:
        raise ValidationError("Invalid month. Month must be between 1 and 12", context={"month": month})
    current_year = datetime.now(timezone.utc).year
    if not MIN_SUM_YEAR <= year <= current_year:
        raise ValidationError(
            f"Invalid year. Year must be between {MIN_SUM_YEAR} and current year", context={"year": year}
        )


# --- Pagination ---


@dataclass(frozen=True)
class PageRequest:
    page: int
    size: int
    sort_by: str
    ascending: bool
    last_expense_id: Optional[str] = None


def normalize_page_request(
    page: Optional[int],
    size: Optional[int],
    sort_by: Optional[str],
    ascending: bool,
    last_expense_id: Optional[str] = None,
    allowed_sort_fields: Sequence[str] = VALID_SORT_FIELDS,
    default_sort: str = "date",
) -> PageRequest:
    """
    Clamp size into (0, PAGE_SIZE_MAX], fall back to ``default_sort`` for unknown sort fields
    and drop blank cursors.
    """
    if size is None or size <= 0:
        size = settings.PAGE_SIZE_DEFAULT
    size = min(size, settings.PAGE_SIZE_MAX)
    if sort_by not in allowed_sort_fields:
        sort_by = default_sort
    return PageRequest(
        page=max(0, page or 0),
        size=size,
        sort_by=sort_by,
        ascending=ascending,
        last_expense_id=None if is_blank(last_expense_id) else last_expense_id.strip(),
    )


def scope_filter(scope: Scope) -> Dict[str, Any]:
    if isinstance(scope, PersonalScope):
        return {"userId": scope.user_id, "familyId": None}
    if isinstance(scope, FamilyScope):
        return {"familyId": scope.family_id}
    raise TypeError(f"Unsupported scope: {scope!r}")


class ExpenseManager:
    """Expense CRUD with ownership/family authorization and paginated retrieval."""

    def __init__(self, db_manager=None, notifications: Optional[NotificationManager] = None):
        self.db_manager = db_manager or default_db_manager
        self.notifications = notifications or default_notification_manager
        self.logger = logger

    def _expenses(self):
        return self.db_manager.get_collection(EXPENSES_COLLECTION)

    def _users(self):
        return self.db_manager.get_collection(USERS_COLLECTION)

    def _families(self):
        return self.db_manager.get_collection(FAMILIES_COLLECTION)

    # --- Authorization ---

    async def _get_expense(self, expense_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        query: Dict[str, Any] = {"expenseId": expense_id}
        if not include_deleted:
            query.update(NOT_DELETED)
        expense = await self._expenses().find_one(query, {"_id": 0})
        if not expense:
            raise ExpenseNotFound(f"Expense with ID '{expense_id}' not found")
        return expense

    async def can_read(self, expense: Dict[str, Any], user: Dict[str, Any]) -> bool:
        if expense.get("userId") == user["id"]:
            return True
        viewer_family = user.get("familyId")
        if is_blank(viewer_family):
            return False
        if expense.get("familyId") == viewer_family:
            return True
        owner = await self._users().find_one({"id": expense.get("userId")}, {"familyId": 1})
        return bool(owner) and owner.get("familyId") == viewer_family

    @staticmethod
    def can_delete(expense: Dict[str, Any], user: Dict[str, Any]) -> bool:
        if expense.get("userId") == user["id"]:
            return True
        viewer_family = user.get("familyId")
        return not is_blank(viewer_family) and viewer_family == expense.get("familyId")

    async def _check_family_target(self, family_id: Optional[str], user: Dict[str, Any], action: str) -> None:
        """A family expense may only target a family the acting user belongs to or heads."""
        if is_blank(family_id):
            return
        family = await self._families().find_one({"familyId": family_id}, {"membersIds": 1, "headId": 1})
        if not family:
            raise FamilyPreconditionFailed("Family not found", "The specified family does not exist")
        if user["id"] not in family.get("membersIds", []) and family.get("headId") != user["id"]:
            raise FamilyPreconditionFailed(
                "You are not part of this family", f"Cannot {action} a family you are not a member of"
            )

    async def family_scope_for(self, user: Dict[str, Any]) -> FamilyScope:
        """The caller's family as a scope, failing with 412 when there is none."""
        family_id = user.get("familyId")
        if is_blank(family_id):
            raise FamilyPreconditionFailed(
                "You are not part of any family", "you are not a member of any family, cannot fetch family expenses"
            )
        family = await self._families().find_one({"familyId": family_id}, {"membersIds": 1, "headId": 1})
        if not family:
            raise FamilyPreconditionFailed("Family not found", "The specified family does not exist")
        if user["id"] not in family.get("membersIds", []) and family.get("headId") != user["id"]:
            raise FamilyPreconditionFailed(
                "You are not part of this family", "Cannot access expenses for a family you are not a member of"
            )
        return FamilyScope(family_id)

    # --- CRUD ---

    async def create_expense(self, user: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        currency = user.get("currencyPreference") or settings.DEFAULT_CURRENCY
        errors = validate_expense_payload(payload, currency)
        if errors:
            raise ExpenseValidationError(errors)
        family_id = None if is_blank(payload.get("familyId")) else payload["familyId"].strip()
        await self._check_family_target(family_id, user, "add expense to")

        now = now_millis()
        expense = {
            "expenseId": str(uuid.uuid4()),
            "userId": user["id"],
            "familyId": family_id,
            "amount": float(payload["amount"]),
            "category": payload["category"].strip().upper(),
            "description": payload.get("description") or "",
            "date": payload["date"],
            "expenseCreatedOn": now,
            "lastModifiedOn": now,
            "createdBy": user["id"],
            "modifiedBy": user["id"],
            "currencyPrefix": currency,
            "updatedUserName": user.get("name") or user.get("email"),
            "synced": bool(payload.get("synced", False)),
            "deleted": False,
            "deletedOn": None,
            "deletedBy": None,
        }
        start_time = self.db_manager.log_query_start(EXPENSES_COLLECTION, "insert_one")
        try:
            await self._expenses().insert_one(expense)
        except PyMongoError as e:
            self.db_manager.log_query_error(EXPENSES_COLLECTION, "insert_one", start_time, e)
            raise CreationError("Failed to create expense", context={"user_id": user["id"]}) from e
        self.db_manager.log_query_success(EXPENSES_COLLECTION, "insert_one", start_time, 1)
        expense.pop("_id", None)
        self.logger.info("Expense %s created by %s (family: %s)", expense["expenseId"], user["id"], family_id)

        await self.notifications.notify_expense_event(
            NotificationType.EXPENSE_ADDED if family_id is None else NotificationType.FAMILY_EXPENSE_ADDED,
            "New Expense Added",
            f"{display_name(user)} added expense: {expense['description']} - {currency}{expense['amount']}",
            expense,
            user,
        )
        return expense

    async def get_expense(self, user: Dict[str, Any], expense_id: str) -> Dict[str, Any]:
        expense = await self._get_expense(expense_id)
        if not await self.can_read(expense, user):
            raise ExpenseAccessDenied()
        return expense

    async def update_expense(self, user: Dict[str, Any], expense_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = await self._get_expense(expense_id)
        if existing["userId"] != user["id"]:
            raise ExpenseAccessDenied("You don't have permission to update this expense")
        currency = user.get("currencyPreference") or settings.DEFAULT_CURRENCY
        errors = validate_expense_payload(payload, currency)
        if errors:
            raise ExpenseValidationError(errors)
        family_id = None if is_blank(payload.get("familyId")) else payload["familyId"].strip()
        await self._check_family_target(family_id, user, "update expense to")

        changes = {
            "amount": float(payload["amount"]),
            "category": payload["category"].strip().upper(),
            "description": payload.get("description") or "",
            "date": payload["date"],
            "familyId": family_id,
            "modifiedBy": user["id"],
            "lastModifiedOn": now_millis(),
            "updatedUserName": user.get("name") or user.get("email"),
            "synced": bool(payload.get("synced", existing.get("synced", False))),
        }
        await self._expenses().update_one({"expenseId": expense_id}, {"$set": changes})
        updated = {**existing, **changes}

        await self.notifications.notify_expense_event(
            NotificationType.EXPENSE_UPDATED
            if is_blank(existing.get("familyId"))
            else NotificationType.FAMILY_EXPENSE_UPDATED,
            "Expense Updated",
            f"{display_name(user)} updated expense: {updated['description']} - {currency}{updated['amount']}",
            updated,
            user,
        )
        return updated

    async def delete_expense(self, user: Dict[str, Any], expense_id: str) -> Dict[str, Any]:
        """Soft delete: the record stays until the purge task removes it."""
        existing = await self._get_expense(expense_id)
        if not self.can_delete(existing, user):
            raise ExpenseAccessDenied("You don't have permission to delete this expense")

        now = now_millis()
        result = await self._expenses().update_one(
            {"expenseId": expense_id, **NOT_DELETED},
            {"$set": {"deleted": True, "deletedOn": now, "deletedBy": user["id"], "lastModifiedOn": now}},
        )
        if result.modified_count == 0:
            raise ExpenseNotFound(f"Expense with ID '{expense_id}' not found")
        self.logger.info("Expense %s soft-deleted by %s", expense_id, user["id"])

        currency = user.get("currencyPreference") or settings.DEFAULT_CURRENCY
        await self.notifications.notify_expense_event(
            NotificationType.EXPENSE_DELETED
            if is_blank(existing.get("familyId"))
            else NotificationType.FAMILY_EXPENSE_DELETED,
            "Expense Deleted",
            f"{display_name(user)} deleted expense: {existing['description']} - {currency}{existing['amount']}",
            existing,
            user,
        )
        return {"message": "Expense Deleted Successfully"}

    # --- Retrieval ---

    async def paginate(self, base_filter: Dict[str, Any], request: PageRequest) -> Dict[str, Any]:
        """
        Run one page of a query.

        Offset mode skips ``page * size`` items. Cursor mode continues strictly after the
        cursor expense in (sort field, expenseId) order; the cursor must itself match
        ``base_filter``.
        """
        direction = ASCENDING if request.ascending else DESCENDING
        sort = [(request.sort_by, direction), ("expenseId", direction)]
        collection = self._expenses()

        start_time = self.db_manager.log_query_start(EXPENSES_COLLECTION, "paginate", base_filter)
        total = await collection.count_documents(base_filter)

        if request.last_expense_id:
            cursor_expense = await collection.find_one({**base_filter, "expenseId": request.last_expense_id})
            if not cursor_expense:
                if await collection.find_one({"expenseId": request.last_expense_id}, {"_id": 1}):
                    raise ExpenseAccessDenied(f"Access denied to expense '{request.last_expense_id}'")
                raise ExpenseNotFound(f"Cursor expense with ID '{request.last_expense_id}' not found")
            op = "$gt" if request.ascending else "$lt"
            value = cursor_expense.get(request.sort_by)
            keyset = {
                "$or": [
                    {request.sort_by: {op: value}},
                    {request.sort_by: value, "expenseId": {op: request.last_expense_id}},
                ]
            }
            items = await collection.find({"$and": [base_filter, keyset]}, {"_id": 0}).sort(sort).limit(
                request.size + 1
            ).to_list(length=request.size + 1)
            has_next = len(items) > request.size
            items = items[: request.size]
            page = 0
            has_previous = True
        else:
            items = await collection.find(base_filter, {"_id": 0}).sort(sort).skip(request.page * request.size).limit(
                request.size
            ).to_list(length=request.size)
            page = request.page
            has_next = (page + 1) * request.size < total
            has_previous = page > 0
        self.db_manager.log_query_success(EXPENSES_COLLECTION, "paginate", start_time, len(items))

        total_pages = math.ceil(total / request.size) if total else 0
        return {
            "content": items,
            "page": page,
            "size": request.size,
            "totalElements": total,
            "totalPages": total_pages,
            "isFirst": not has_previous,
            "isLast": not has_next,
            "hasNext": has_next,
            "hasPrevious": has_previous,
            "lastExpenseId": items[-1]["expenseId"] if items else None,
        }

    async def list_expenses(self, scope: Scope, request: PageRequest) -> Dict[str, Any]:
        """Personal (familyId null) or family expenses."""
        return await self.paginate({**scope_filter(scope), **NOT_DELETED}, request)

    async def list_by_category(self, user: Dict[str, Any], category: str, request: PageRequest) -> Dict[str, Any]:
        if is_blank(category) or category.strip().upper() not in VALID_CATEGORIES:
            raise ExpenseValidationError(
                [f"Category must be one of: {', '.join(VALID_CATEGORIES)}"], message="Invalid category"
            )
        query = {"userId": user["id"], "category": category.strip().upper(), **NOT_DELETED}
        return await self.paginate(query, request)

    async def list_between_dates(
        self, user: Dict[str, Any], start_date: str, end_date: str, request: PageRequest
    ) -> Dict[str, Any]:
        start, end = parse_day(start_date), parse_day(end_date)
        if end < start:
            raise ValidationError("End date must not be before start date")
        query = {
            "userId": user["id"],
            "date": {"$gte": day_start_millis(start), "$lte": day_end_millis(end)},
            **NOT_DELETED,
        }
        return await self.paginate(query, request)

    async def list_since(self, scope_query: Dict[str, Any], since: int, request: PageRequest) -> Dict[str, Any]:
        """
        Everything at or after ``since``, soft-deleted items included.

        The cut-off applies to the sort field when it is a timestamp, else to ``date``.
        """
        since_field = request.sort_by if request.sort_by in VALID_SYNC_SORT_FIELDS else "date"
        query = {**scope_query, since_field: {"$gte": since}}
        return await self.paginate(query, request)

    async def list_user_since(self, user: Dict[str, Any], last_modified: int, request: PageRequest) -> Dict[str, Any]:
        return await self.list_since({"userId": user["id"]}, last_modified, request)

    async def list_user_since_date(self, user: Dict[str, Any], day: str, request: PageRequest) -> Dict[str, Any]:
        return await self.list_since({"userId": user["id"]}, day_start_millis(parse_day(day)), request)

    async def list_family_since(self, user: Dict[str, Any], last_modified: int, request: PageRequest) -> Dict[str, Any]:
        scope = await self.family_scope_for(user)
        return await self.list_since(scope_filter(scope), last_modified, request)

    async def list_family_since_date(self, user: Dict[str, Any], day: str, request: PageRequest) -> Dict[str, Any]:
        since = day_start_millis(parse_day(day))
        scope = await self.family_scope_for(user)
        return await self.list_since(scope_filter(scope), since, request)

    # --- Aggregates ---

    async def _sum_and_count(self, query: Dict[str, Any]) -> Tuple[float, int]:
        expenses = await self._expenses().find(query, {"amount": 1}).to_list(length=None)
        return round(sum(float(e.get("amount") or 0) for e in expenses), 2), len(expenses)

    async def monthly_sum(self, scope: Scope, year: int, month: int) -> Dict[str, Any]:
        """
        Sum and count of a month's expenses.

        A personal scope only counts expenses with no family; a family scope counts every
        member's family expenses.
        """
        validate_month(year, month)
        start, end = month_range_millis(year, month)
        query = {**scope_filter(scope), "date": {"$gte": start, "$lte": end}, **NOT_DELETED}
        total, count = await self._sum_and_count(query)
        result: Dict[str, Any] = {"year": year, "month": month, "totalAmount": total, "expenseCount": count}
        if isinstance(scope, PersonalScope):
            result["userId"] = scope.user_id
        else:
            result["familyId"] = scope.family_id
        return result

    async def family_monthly_sum(self, user: Dict[str, Any], year: int, month: int) -> Dict[str, Any]:
        if is_blank(user.get("familyId")):
            raise FamilyPreconditionFailed("You are not part of any family", "You are not part of any family")
        return await self.monthly_sum(FamilyScope(user["familyId"]), year, month)

    # --- Push ---

    async def notify_expense(self, user: Dict[str, Any], expense_id: str) -> Dict[str, Any]:
        """Push a reminder about one expense to the caller's own devices."""
        expense = await self.get_expense(user, expense_id)
        tokens = await self.notifications.tokens_for_user(user["id"])
        if not tokens:
            raise ValidationError("No FCM tokens found. Please update your device token first.")
        currency = user.get("currencyPreference") or settings.DEFAULT_CURRENCY
        result = await self.notifications.push_to_tokens(
            tokens,
            PushMessage(
                title="Expense Notification",
                body=f"Expense '{expense.get('description')}' of {currency}{expense.get('amount')}",
                notification_type=NotificationType.GENERAL,
                data={"expenseId": expense["expenseId"]},
            ),
        )
        return {
            "message": f"Notification sent successfully to {result.success_count} device(s)",
            "deliveredCount": result.success_count,
            "invalidTokenCount": len(result.invalid_tokens),
        }


expense_manager = ExpenseManager()
