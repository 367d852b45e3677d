"""User profile and push device routes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.user_manager import user_manager
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.routes.users.models import (
    OnboardingRequest,
    RegisterDeviceRequest,
    RemoveDeviceRequest,
    UpdateProfileRequest,
)
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception

logger = get_logger(prefix="[User Routes]")

router = APIRouter(prefix="/api/users", tags=["Users"])


@router.get("/profile")
async def get_profile(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    return current_user


@router.put("/profile")
async def update_profile(
    payload: UpdateProfileRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await user_manager.update_profile(current_user["id"], payload.model_dump(exclude_none=True))
    except ExpenseTrackerError as e:
        logger.info("Profile update rejected for %s: %s", current_user["id"], e.message)
        raise to_http_exception(e) from e


@router.post("/onboarding-complete")
async def complete_onboarding(
    payload: Optional[OnboardingRequest] = None, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await user_manager.set_onboarding_completed(current_user["id"], payload.completed if payload else True)
    except ExpenseTrackerError as e:
        raise to_http_exception(e) from e


@router.post("/fcm-token")
async def register_device(
    payload: RegisterDeviceRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    """Register a push token for the caller. A token held by another account moves to the caller."""
    try:
        device = await user_manager.register_device(
            current_user["id"], payload.fcmToken, payload.deviceName, payload.deviceType
        )
    except ExpenseTrackerError as e:
        raise to_http_exception(e) from e
    return {"message": "FCM token updated successfully", "device": device}


@router.get("/devices")
async def list_devices(current_user: dict = Depends(get_current_user_dep)) -> List[Dict[str, Any]]:
    return await user_manager.list_active_devices(current_user["id"])


@router.delete("/device")
async def remove_device(payload: RemoveDeviceRequest, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    if not await user_manager.remove_device(current_user["id"], payload.fcmToken):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "DEVICE_NOT_FOUND", "message": "Device not found"},
        )
    return {"message": "Device removed successfully"}


@router.delete("/devices")
async def remove_all_devices(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    count = await user_manager.logout_all_devices(current_user["id"])
    return {"message": "Logged out from all devices", "deactivatedCount": count}
