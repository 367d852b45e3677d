"""
Family management routes.

Membership changes go through the family manager, which keeps the family document, the
members' ``familyId`` and the join-request rows consistent and sends the notifications.
Head-only operations answer 403 for other members.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from expense_tracker.config import settings
from expense_tracker.managers.family_manager import FamilyError, family_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import security_manager
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.routes.family.models import (
    AliasRequest,
    CreateFamilyRequest,
    EmailRequest,
    JoinRequestDecision,
    RemoveMemberRequest,
    RequestJoinRequest,
    UpdateFamilyNameRequest,
)
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception
from expense_tracker.utils.logging_utils import log_performance

logger = get_logger(prefix="[Family Routes]")

router = APIRouter(prefix="/api/family", tags=["Family"])

HOUR = 3600


def _fail(error: ExpenseTrackerError, operation: str, user: Dict[str, Any]) -> HTTPException:
    if isinstance(error, FamilyError):
        logger.info("%s rejected for user %s: %s", operation, user.get("id"), error.message)
    else:
        logger.warning("%s failed for user %s: %s", operation, user.get("id"), error.message)
    return to_http_exception(error)


@router.post("/create")
@log_performance("create_family")
async def create_family(
    request: Request, payload: CreateFamilyRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    """Create a family with the caller as head and only member."""
    await security_manager.check_rate_limit(
        request,
        f"family_create_{current_user['id']}",
        rate_limit_requests=settings.FAMILY_CREATE_RATE_LIMIT,
        rate_limit_period=HOUR,
    )
    try:
        return await family_manager.create_family(current_user, payload.name)
    except ExpenseTrackerError as e:
        raise _fail(e, "create_family", current_user) from e


@router.get("/details")
async def get_family_details(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.get_family_details(current_user)
    except ExpenseTrackerError as e:
        raise _fail(e, "get_family_details", current_user) from e


@router.post("/join")
async def join_family(
    request: Request, payload: AliasRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await security_manager.check_rate_limit(
        request,
        f"family_join_{current_user['id']}",
        rate_limit_requests=settings.JOIN_REQUEST_RATE_LIMIT,
        rate_limit_period=HOUR,
    )
    try:
        return await family_manager.join_family(current_user, payload.aliasName)
    except ExpenseTrackerError as e:
        raise _fail(e, "join_family", current_user) from e


@router.post("/request-join")
async def request_join(
    request: Request, payload: RequestJoinRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    """Ask the head of the family with this alias to accept the caller."""
    await security_manager.check_rate_limit(
        request,
        f"join_request_{current_user['id']}",
        rate_limit_requests=settings.JOIN_REQUEST_RATE_LIMIT,
        rate_limit_period=HOUR,
    )
    try:
        return await family_manager.request_to_join(current_user, alias_name=payload.aliasName, message=payload.message)
    except ExpenseTrackerError as e:
        raise _fail(e, "request_join", current_user) from e


@router.post("/leave")
async def leave_family(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    """Leave the family. The last member leaving deletes it; a leaving head hands over to the next member."""
    try:
        return await family_manager.leave_family(current_user)
    except ExpenseTrackerError as e:
        raise _fail(e, "leave_family", current_user) from e


@router.post("/invite")
async def invite_member(
    request: Request, payload: EmailRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await security_manager.check_rate_limit(
        request,
        f"family_invite_{current_user['id']}",
        rate_limit_requests=settings.FAMILY_INVITE_RATE_LIMIT,
        rate_limit_period=HOUR,
    )
    try:
        return await family_manager.invite_member(current_user, payload.email)
    except ExpenseTrackerError as e:
        raise _fail(e, "invite_member", current_user) from e


@router.post("/resend-invitation")
async def resend_invitation(
    request: Request, payload: EmailRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await security_manager.check_rate_limit(
        request,
        f"family_invite_{current_user['id']}",
        rate_limit_requests=settings.FAMILY_INVITE_RATE_LIMIT,
        rate_limit_period=HOUR,
    )
    try:
        return await family_manager.resend_invitation(current_user, payload.email)
    except ExpenseTrackerError as e:
        raise _fail(e, "resend_invitation", current_user) from e


@router.post("/cancel-invitation")
async def cancel_invitation(payload: EmailRequest, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.cancel_invitation(current_user, payload.email)
    except ExpenseTrackerError as e:
        raise _fail(e, "cancel_invitation", current_user) from e


@router.post("/accept-invitation")
async def accept_invitation(payload: AliasRequest, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.accept_invitation(current_user, payload.aliasName)
    except ExpenseTrackerError as e:
        raise _fail(e, "accept_invitation", current_user) from e


@router.post("/reject-invitation")
async def reject_invitation(payload: AliasRequest, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.reject_invitation(current_user, payload.aliasName)
    except ExpenseTrackerError as e:
        raise _fail(e, "reject_invitation", current_user) from e


@router.post("/accept-join-request")
async def accept_join_request(
    payload: JoinRequestDecision, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await family_manager.accept_join_request(
            current_user, requester_id=payload.requesterId, request_id=payload.requestId
        )
    except ExpenseTrackerError as e:
        raise _fail(e, "accept_join_request", current_user) from e


@router.post("/reject-join-request")
async def reject_join_request(
    payload: JoinRequestDecision, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await family_manager.reject_join_request(
            current_user, requester_id=payload.requesterId, request_id=payload.requestId
        )
    except ExpenseTrackerError as e:
        raise _fail(e, "reject_join_request", current_user) from e


@router.post("/remove-member")
async def remove_member(
    payload: RemoveMemberRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await family_manager.remove_member(current_user, payload.memberEmail)
    except ExpenseTrackerError as e:
        raise _fail(e, "remove_member", current_user) from e


@router.post("/update-name")
async def update_family_name(
    payload: UpdateFamilyNameRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await family_manager.update_family_name(current_user, payload.name)
    except ExpenseTrackerError as e:
        raise _fail(e, "update_family_name", current_user) from e
