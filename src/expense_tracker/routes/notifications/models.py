from typing import Optional

from pydantic import BaseModel, Field

from expense_tracker.models import NotificationType


class CreateNotificationRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., max_length=1000)
    type: NotificationType = NotificationType.GENERAL
    receiverId: Optional[str] = Field(None, description="Defaults to the caller")
    familyId: Optional[str] = None
    familyAlias: Optional[str] = None
    actionable: bool = False


class UpdateNotificationRequest(BaseModel):
    isRead: Optional[bool] = None
    actionable: Optional[bool] = None


class UnreadCountResponse(BaseModel):
    unreadCount: int


class MarkAllReadResponse(BaseModel):
    message: str
    updatedCount: int
