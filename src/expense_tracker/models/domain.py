"""
Domain types shared by managers and routes.

Timestamps stored in MongoDB documents are epoch milliseconds (UTC), matching the
wire format the mobile clients send and expect.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Union


class ExpenseCategory(str, Enum):
    FOOD = "FOOD"
    ENTERTAINMENT = "ENTERTAINMENT"
    FUN = "FUN"
    BILLS = "BILLS"
    TRAVEL = "TRAVEL"
    UTILITIES = "UTILITIES"
    HEALTH = "HEALTH"
    SHOPPING = "SHOPPING"
    EDUCATION = "EDUCATION"
    OTHERS = "OTHERS"


VALID_CATEGORIES = [category.value for category in ExpenseCategory]


class JoinRequestStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    """Kinds of user-facing events. Push channel routing is derived from the name."""

    # Expense events
    EXPENSE_ADDED = "EXPENSE_ADDED"
    EXPENSE_UPDATED = "EXPENSE_UPDATED"
    EXPENSE_DELETED = "EXPENSE_DELETED"
    FAMILY_EXPENSE_ADDED = "FAMILY_EXPENSE_ADDED"
    FAMILY_EXPENSE_UPDATED = "FAMILY_EXPENSE_UPDATED"
    FAMILY_EXPENSE_DELETED = "FAMILY_EXPENSE_DELETED"

    # Family membership events
    JOIN_FAMILY_INVITATION = "JOIN_FAMILY_INVITATION"
    JOIN_FAMILY_REQUEST = "JOIN_FAMILY_REQUEST"
    JOIN_FAMILY_INVITATION_ACCEPTED = "JOIN_FAMILY_INVITATION_ACCEPTED"
    JOIN_FAMILY_INVITATION_REJECTED = "JOIN_FAMILY_INVITATION_REJECTED"
    JOIN_FAMILY_INVITATION_CANCELLED = "JOIN_FAMILY_INVITATION_CANCELLED"
    JOIN_FAMILY_REQUEST_ACCEPTED = "JOIN_FAMILY_REQUEST_ACCEPTED"
    JOIN_FAMILY_REQUEST_REJECTED = "JOIN_FAMILY_REQUEST_REJECTED"
    FAMILY_MEMBER_JOINED = "FAMILY_MEMBER_JOINED"
    FAMILY_MEMBER_LEFT = "FAMILY_MEMBER_LEFT"
    FAMILY_MEMBER_REMOVED = "FAMILY_MEMBER_REMOVED"

    # Reminders
    BUDGET_LIMIT_REACHED = "BUDGET_LIMIT_REACHED"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    REMINDER = "REMINDER"

    PROFILE_UPDATED = "PROFILE_UPDATED"
    GENERAL = "GENERAL"
    OTHER = "OTHER"


@dataclass(frozen=True)
class PersonalScope:
    """Expenses owned by one user with no family association."""

    user_id: str


@dataclass(frozen=True)
class FamilyScope:
    """Expenses shared with a family, whoever owns them."""

    family_id: str


Scope = Union[PersonalScope, FamilyScope]


def now_millis() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def is_blank(value) -> bool:
    return value is None or not str(value).strip()
