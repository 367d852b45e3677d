"""
Read-only expense statistics for a user or a family.

The window is either an explicit [start_date, end_date] (both given, end >= start) or a named
period: current_month (default), last_month, current_year. Soft-deleted expenses are excluded.
Nothing here writes to the database.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from expense_tracker.config import settings
from expense_tracker.database import db_manager as default_db_manager
from expense_tracker.managers.expense_manager import NOT_DELETED, day_end_millis, day_start_millis, parse_day
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models import FamilyScope, PersonalScope, Scope, is_blank
from expense_tracker.utils.error_handling import AccessDeniedError, NotFoundError, ValidationError

logger = get_logger(prefix="[StatisticsManager]")

EXPENSES_COLLECTION = "expenses"
USERS_COLLECTION = "users"
FAMILIES_COLLECTION = "families"

PERIODS = ("current_month", "last_month", "current_year")
MAX_TREND_MONTHS = 24


@dataclass(frozen=True)
class StatsWindow:
    start: int
    end: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end, "period": self.label}


def _add_months(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) + months
    return date(month_index // 12, month_index % 12 + 1, 1)


def _month_window(first_day: date, months: int = 1) -> tuple:
    last_day = _add_months(first_day, months)
    return day_start_millis(first_day), day_start_millis(last_day) - 1


def resolve_window(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    period: Optional[str] = None,
    today: Optional[date] = None,
) -> StatsWindow:
    """Explicit dates win when both parse and are ordered; otherwise the named period."""
    today = today or datetime.now(timezone.utc).date()
    if not is_blank(start_date) and not is_blank(end_date):
        try:
            start, end = parse_day(start_date), parse_day(end_date)
        except ValidationError:
            logger.debug("Ignoring unparseable stats window %s..%s", start_date, end_date)
            start = end = None
        if start is not None and end >= start:
            return StatsWindow(day_start_millis(start), day_end_millis(end), f"{start.isoformat()}..{end.isoformat()}")

    first_of_month = today.replace(day=1)
    if period == "last_month":
        start, end = _month_window(_add_months(first_of_month, -1))
        return StatsWindow(start, end, "last_month")
    if period == "current_year":
        start, end = _month_window(date(today.year, 1, 1), 12)
        return StatsWindow(start, end, "current_year")
    start, end = _month_window(first_of_month)
    return StatsWindow(start, end, "current_month")


def _round(value: float) -> float:
    return round(value, 2)


def _month_key(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime("%Y-%m")


def currency_breakdown(expenses: Iterable[Dict[str, Any]], default_currency: str) -> List[Dict[str, Any]]:
    totals: Dict[str, List[float]] = defaultdict(list)
    for expense in expenses:
        totals[expense.get("currencyPrefix") or default_currency].append(float(expense.get("amount") or 0))
    return [
        {
            "currencyPrefix": currency,
            "totalAmount": _round(sum(amounts)),
            "count": len(amounts),
            "averageAmount": _round(sum(amounts) / len(amounts)),
        }
        for currency, amounts in sorted(totals.items(), key=lambda item: -sum(item[1]))
    ]


def category_breakdown(expenses: List[Dict[str, Any]], currency: str) -> List[Dict[str, Any]]:
    total = sum(float(e.get("amount") or 0) for e in expenses)
    grouped: Dict[str, List[float]] = defaultdict(list)
    for expense in expenses:
        grouped[expense.get("category") or "OTHERS"].append(float(expense.get("amount") or 0))
    breakdown = [
        {
            "category": category,
            "amount": _round(sum(amounts)),
            "currencyPrefix": currency,
            "count": len(amounts),
            "percentage": _round(sum(amounts) / total * 100) if total > 0 else 0.0,
        }
        for category, amounts in grouped.items()
    ]
    return sorted(breakdown, key=lambda item: item["amount"], reverse=True)


def monthly_trend(expenses: Iterable[Dict[str, Any]], default_currency: str) -> List[Dict[str, Any]]:
    """Per-month totals, oldest first, split by currency."""
    months: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for expense in expenses:
        currency = expense.get("currencyPrefix") or default_currency
        months[_month_key(expense["date"])][currency] += float(expense.get("amount") or 0)
    trend = []
    for month in sorted(months):
        by_currency = {currency: _round(amount) for currency, amount in months[month].items()}
        trend.append({"month": month, "amount": _round(sum(by_currency.values())), "amountsByCurrency": by_currency})
    return trend


def summarize(expenses: List[Dict[str, Any]], currency: str) -> Dict[str, Any]:
    total = sum(float(e.get("amount") or 0) for e in expenses)
    count = len(expenses)
    currencies = currency_breakdown(expenses, currency)
    return {
        "totalExpenses": _round(total),
        "currencyPrefix": currency,
        "expenseCount": count,
        "averageExpense": _round(total / count) if count else 0.0,
        "averageExpenseByCurrency": {c["currencyPrefix"]: c["averageAmount"] for c in currencies},
        "categoryWiseExpenses": category_breakdown(expenses, currency),
        "monthlyTrend": monthly_trend(expenses, currency),
        "currencyWiseExpenses": currencies,
    }


class StatisticsManager:
    def __init__(self, db_manager=None):
        self.db_manager = db_manager or default_db_manager
        self.logger = logger

    async def _load_expenses(self, scope: Scope, window: StatsWindow) -> List[Dict[str, Any]]:
        if isinstance(scope, PersonalScope):
            query: Dict[str, Any] = {"userId": scope.user_id}
        else:
            query = {"familyId": scope.family_id}
        query.update({"date": {"$gte": window.start, "$lte": window.end}, **NOT_DELETED})
        start_time = self.db_manager.log_query_start(EXPENSES_COLLECTION, "find", query)
        expenses = await self.db_manager.get_collection(EXPENSES_COLLECTION).find(query, {"_id": 0}).to_list(
            length=None
        )
        self.db_manager.log_query_success(EXPENSES_COLLECTION, "find", start_time, len(expenses))
        return expenses

    @staticmethod
    def _require_own_stats(viewer: Dict[str, Any], user_id: str) -> None:
        if viewer["id"] != user_id:
            raise AccessDeniedError("You can only access your own statistics", error_code="ACCESS_DENIED")

    async def _require_family(self, viewer: Dict[str, Any], family_id: str) -> Dict[str, Any]:
        if is_blank(family_id):
            raise ValidationError("Family ID is required")
        if viewer.get("familyId") != family_id:
            raise AccessDeniedError("You can only access statistics of your own family", error_code="ACCESS_DENIED")
        family = await self.db_manager.get_collection(FAMILIES_COLLECTION).find_one(
            {"familyId": family_id}, {"_id": 0}
        )
        if not family:
            raise NotFoundError("Family not found", error_code="FAMILY_NOT_FOUND")
        return family

    async def personal_stats(self, viewer: Dict[str, Any], user_id: str, window: StatsWindow) -> Dict[str, Any]:
        """Totals over every expense the user owns in the window, personal or shared."""
        self._require_own_stats(viewer, user_id)
        currency = viewer.get("currencyPreference") or settings.DEFAULT_CURRENCY
        expenses = await self._load_expenses(PersonalScope(user_id), window)
        stats = summarize(expenses, currency)
        stats["userId"] = user_id
        stats["window"] = window.to_dict()
        return stats

    async def family_stats(self, viewer: Dict[str, Any], family_id: str, window: StatsWindow) -> Dict[str, Any]:
        """Family totals plus a per-member breakdown with each member's share of the total."""
        family = await self._require_family(viewer, family_id)
        currency = viewer.get("currencyPreference") or settings.DEFAULT_CURRENCY
        expenses = await self._load_expenses(FamilyScope(family_id), window)
        stats = summarize(expenses, currency)
        family_total = stats["totalExpenses"]

        by_member: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for expense in expenses:
            by_member[expense["userId"]].append(expense)
        member_ids = list(family.get("membersIds", []))
        # Former members who still own family expenses in the window
        member_ids.extend(uid for uid in by_member if uid not in member_ids)

        users = await self.db_manager.get_collection(USERS_COLLECTION).find(
            {"id": {"$in": member_ids}}, {"_id": 0, "id": 1, "name": 1, "email": 1}
        ).to_list(length=None)
        names = {u["id"]: u.get("name") or u.get("email") or "Unknown User" for u in users}

        member_stats = []
        for member_id in member_ids:
            member_expenses = by_member.get(member_id, [])
            member_total = _round(sum(float(e.get("amount") or 0) for e in member_expenses))
            member_stats.append(
                {
                    "userId": member_id,
                    "userName": names.get(member_id, "Unknown User"),
                    "totalExpenses": member_total,
                    "currencyPrefix": currency,
                    "expenseCount": len(member_expenses),
                    "percentage": _round(member_total / family_total * 100) if family_total > 0 else 0.0,
                    "currencyWiseExpenses": currency_breakdown(member_expenses, currency),
                }
            )

        stats["totalFamilyExpenses"] = stats.pop("totalExpenses")
        stats["familyId"] = family_id
        stats["memberStats"] = member_stats
        stats["window"] = window.to_dict()
        return stats

    async def _trend(self, scope: Scope, months: int, currency: str, today: Optional[date] = None) -> Dict[str, Any]:
        if not 1 <= months <= MAX_TREND_MONTHS:
            raise ValidationError(f"Months must be between 1 and {MAX_TREND_MONTHS}")
        today = today or datetime.now(timezone.utc).date()
        first = _add_months(today.replace(day=1), -(months - 1))
        start, end = _month_window(first, months)
        window = StatsWindow(start, end, f"last_{months}_months")
        expenses = await self._load_expenses(scope, window)
        return {"months": months, "monthlyTrend": monthly_trend(expenses, currency), "window": window.to_dict()}

    async def personal_monthly_trend(self, viewer: Dict[str, Any], user_id: str, months: int = 6) -> Dict[str, Any]:
        self._require_own_stats(viewer, user_id)
        currency = viewer.get("currencyPreference") or settings.DEFAULT_CURRENCY
        return await self._trend(PersonalScope(user_id), months, currency)

    async def family_monthly_trend(self, viewer: Dict[str, Any], family_id: str, months: int = 6) -> Dict[str, Any]:
        await self._require_family(viewer, family_id)
        currency = viewer.get("currencyPreference") or settings.DEFAULT_CURRENCY
        return await self._trend(FamilyScope(family_id), months, currency)


statistics_manager = StatisticsManager()
