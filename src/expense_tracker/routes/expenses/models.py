from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ExpenseRequest(BaseModel):
    """Body for creating or updating an expense. Server-assigned fields are ignored."""

    amount: Optional[float] = Field(None, allow_inf_nan=False)
    category: Optional[str] = None
    description: Optional[str] = Field(None, description="Free text, at most 500 characters")
    date: Optional[int] = Field(None, description="Event time in epoch milliseconds")
    familyId: Optional[str] = Field(None, description="Share with this family; omit for a personal expense")
    userId: Optional[str] = None
    synced: Optional[bool] = None


class ExpenseResponse(BaseModel):
    expenseId: str
    userId: str
    familyId: Optional[str] = None
    amount: float
    category: str
    description: str = ""
    date: int
    expenseCreatedOn: int
    lastModifiedOn: int
    createdBy: Optional[str] = None
    modifiedBy: Optional[str] = None
    currencyPrefix: Optional[str] = None
    updatedUserName: Optional[str] = None
    synced: bool = False
    deleted: bool = False
    deletedOn: Optional[int] = None
    deletedBy: Optional[str] = None


class ExpensePage(BaseModel):
    content: List[Dict[str, Any]]
    page: int
    size: int
    totalElements: int
    totalPages: int
    isFirst: bool
    isLast: bool
    hasNext: bool
    hasPrevious: bool
    lastExpenseId: Optional[str] = None


class NotifyExpenseRequest(BaseModel):
    expenseId: str = Field(..., min_length=1)
