"""
Join request routes.

A request is a first-class record with a status (PENDING, ACCEPTED, REJECTED, CANCELLED). The
requester sends, cancels and resends; the family head lists, accepts and rejects. Sending and
resending are throttled per requester and family: beyond the allowed attempts inside the window
the answer is 409 with ``reason: MAX_RETRIES``.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from expense_tracker.config import settings
from expense_tracker.managers.family_manager import family_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import security_manager
from expense_tracker.routes.auth import get_current_user_dep
from expense_tracker.routes.join_requests.models import JoinRequestReference, SendJoinRequest
from expense_tracker.utils.error_handling import ExpenseTrackerError, to_http_exception

logger = get_logger(prefix="[Join Request Routes]")

router = APIRouter(prefix="/api/join-requests", tags=["Join Requests"])


def _fail(error: ExpenseTrackerError, operation: str, user: Dict[str, Any]) -> HTTPException:
    logger.info("%s rejected for user %s: %s", operation, user.get("id"), error.message)
    return to_http_exception(error)


async def _throttle(request: Request, user: Dict[str, Any]) -> None:
    await security_manager.check_rate_limit(
        request,
        f"join_request_{user['id']}",
        rate_limit_requests=settings.JOIN_REQUEST_RATE_LIMIT,
        rate_limit_period=3600,
    )


@router.post("/send")
async def send_join_request(
    request: Request, payload: SendJoinRequest, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await _throttle(request, current_user)
    try:
        return await family_manager.request_to_join(
            current_user, alias_name=payload.aliasName, family_id=payload.familyId, message=payload.message
        )
    except ExpenseTrackerError as e:
        raise _fail(e, "send_join_request", current_user) from e


@router.get("/sent")
async def list_sent(current_user: dict = Depends(get_current_user_dep)) -> List[Dict[str, Any]]:
    """Every request the caller has sent, newest first, whatever its status."""
    return await family_manager.list_sent_join_requests(current_user)


@router.get("/sent/pending")
async def list_sent_pending(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    return await family_manager.get_own_pending_join_requests(current_user)


@router.post("/cancel")
async def cancel_join_request(
    payload: JoinRequestReference, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    try:
        return await family_manager.cancel_own_join_request(
            current_user, alias_name=payload.aliasName, request_id=payload.requestId
        )
    except ExpenseTrackerError as e:
        raise _fail(e, "cancel_join_request", current_user) from e


@router.post("/resend")
async def resend_join_request(
    request: Request, payload: JoinRequestReference, current_user: dict = Depends(get_current_user_dep)
) -> Dict[str, Any]:
    await _throttle(request, current_user)
    try:
        return await family_manager.resend_own_join_request(
            current_user, alias_name=payload.aliasName, request_id=payload.requestId, message=payload.message
        )
    except ExpenseTrackerError as e:
        raise _fail(e, "resend_join_request", current_user) from e


@router.get("/received")
async def list_received(
    family_id: Optional[str] = Query(None, alias="familyId"), current_user: dict = Depends(get_current_user_dep)
) -> List[Dict[str, Any]]:
    try:
        return await family_manager.list_received_join_requests(current_user, family_id)
    except ExpenseTrackerError as e:
        raise _fail(e, "list_received_join_requests", current_user) from e


@router.post("/{request_id}/accept")
async def accept_join_request(request_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.accept_join_request(current_user, request_id=request_id)
    except ExpenseTrackerError as e:
        raise _fail(e, "accept_join_request", current_user) from e


@router.post("/{request_id}/reject")
async def reject_join_request(request_id: str, current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    try:
        return await family_manager.reject_join_request(current_user, request_id=request_id)
    except ExpenseTrackerError as e:
        raise _fail(e, "reject_join_request", current_user) from e
