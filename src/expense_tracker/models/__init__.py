"""
Domain models for the Expense Tracker service.

Request/response schemas live next to their routers in routes/<area>/models.py.
"""

from .domain import (
    VALID_CATEGORIES,
    ExpenseCategory,
    FamilyScope,
    JoinRequestStatus,
    NotificationType,
    PersonalScope,
    Scope,
    is_blank,
    now_millis,
    to_millis,
)

__all__ = [
    "VALID_CATEGORIES",
    "ExpenseCategory",
    "FamilyScope",
    "JoinRequestStatus",
    "NotificationType",
    "PersonalScope",
    "Scope",
    "is_blank",
    "now_millis",
    "to_millis",
]
