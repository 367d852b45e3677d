"""Notification inbox routes. A notification is visible only to its receiver."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.notification_manager import build_notification, display_name, notification_manager
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.routes.notifications.models import (
    CreateNotificationRequest,
    MarkAllReadResponse,
    UnreadCountResponse,
    UpdateNotificationRequest,
)
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception

logger = get_logger(prefix="[Notification Routes]")

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


def _fail(error: ExpenseTrackerError) -> HTTPException:
    logger.info("Notification request rejected: %s", error.message)
    return to_http_exception(error)


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"), current_user: dict = Depends(get_current_user_dep)
) -> List[Dict[str, Any]]:
    """The caller's notifications, newest first."""
    return await notification_manager.list_for_receiver(current_user["id"], unread_only=unread_only)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    payload: CreateNotificationRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    document = build_notification(
        payload.title,
        payload.message,
        payload.receiverId or current_user["id"],
        payload.type,
        sender_id=current_user["id"],
        sender_name=display_name(current_user),
        family_id=payload.familyId,
        family_alias=payload.familyAlias,
        actionable=payload.actionable,
    )
    return await notification_manager.create_notification(document)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(current_user: dict = Depends(get_current_user_dep)) -> UnreadCountResponse:
    return UnreadCountResponse(unreadCount=await notification_manager.unread_count(current_user["id"]))


@router.patch("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(current_user: dict = Depends(get_current_user_dep)) -> MarkAllReadResponse:
    updated = await notification_manager.mark_all_read(current_user["id"])
    return MarkAllReadResponse(message="All notifications marked as read", updatedCount=updated)


@router.get("/{notification_id}")
async def get_notification(notification_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await notification_manager.get_for_receiver(notification_id, current_user["id"])
    except ExpenseTrackerError as e:
        raise _fail(e) from e


@router.put("/{notification_id}")
async def update_notification(
    notification_id: str, payload: UpdateNotificationRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await notification_manager.update_notification(
            notification_id, current_user["id"], payload.model_dump(exclude_none=True)
        )
    except ExpenseTrackerError as e:
        raise _fail(e) from e


@router.patch("/{notification_id}/read")
async def mark_read(notification_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await notification_manager.mark_read(notification_id, current_user["id"])
    except ExpenseTrackerError as e:
        raise _fail(e) from e


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(notification_id: str, current_user: dict = Depends(get_current_user_dep)) -> Response:
    try:
        await notification_manager.delete_notification(notification_id, current_user["id"])
    except ExpenseTrackerError as e:
        raise _fail(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
