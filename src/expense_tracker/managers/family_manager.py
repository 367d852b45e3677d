"""
Family Management System.

This module implements the family membership workflow: creating families, inviting members by
email, self-service join requests, accepting and rejecting both, removing members, leaving, head
reassignment and renaming.

Invariants maintained by every operation:
- A user belongs to at most one family (users.familyId).
- ``headId`` is always a current member; ``membersIds`` never exceeds ``maxSize``.
- A user or email appears in at most one of membersIds, pendingMemberEmails and
  pendingJoinRequests for a given family.

Join requests are first-class documents in the ``join_requests`` collection with a status of
PENDING, ACCEPTED, REJECTED or CANCELLED. ``Family.pendingJoinRequests`` is the list of
requester ids with a PENDING request and is updated in the same unit of work.

Concurrency:
Adding a member is a single conditional update that only matches while the user is not yet a
member and the family still has a free slot. The user document is claimed first with a
conditional update on ``familyId: null``, so a user can never end up in two families. When the
deployment supports transactions both writes share one; otherwise the user claim is rolled back
by hand if the family update does not match.

Notifications are sent after the writes complete. Delivery failures never fail the operation.
"""

import re
from typing import Any, Dict, List, Optional, Tuple
import uuid

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from expense_tracker.config import settings
from expense_tracker.database import db_manager as default_db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.notification_manager import (
    NotificationManager,
    display_name,
    notification_manager as default_notification_manager,
)
from expense_tracker.models import JoinRequestStatus, NotificationType, is_blank, now_millis
from expense_tracker.utils.alias import generate_unique_alias
from expense_tracker.utils.error_handling import (
    AccessDeniedError,
    ConflictError,
    ErrorContext,
    ExpenseTrackerError,
    NotFoundError,
    RetryableError,
    RetryConfig,
    ValidationError,
    retry_with_backoff,
)

logger = get_logger(prefix="[FamilyManager]")

FAMILIES_COLLECTION = "families"
USERS_COLLECTION = "users"
JOIN_REQUESTS_COLLECTION = "join_requests"

FAMILY_NAME_MIN_LENGTH = 2
FAMILY_NAME_MAX_LENGTH = 100
FAMILY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_]+$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
EMAIL_MAX_LENGTH = 254
ALIAS_PATTERN = re.compile(r"^[A-Z0-9]+$")

MEMBER_PROJECTION = {
    "_id": 0,
    "id": 1,
    "name": 1,
    "email": 1,
    "aliasName": 1,
    "familyId": 1,
    "profilePic": 1,
    "profilePicLow": 1,
    "currencyPreference": 1,
}

JOIN_RETRY_CONFIG = RetryConfig(max_attempts=3, initial_delay=0.05)


# --- Exceptions ---


class FamilyError(ExpenseTrackerError):
    """Base exception for family workflow errors."""


class FamilyValidationError(FamilyError, ValidationError):
    def __init__(self, message: str):
        super().__init__(message, errors=[message], error_code="VALIDATION_ERROR")


class FamilyNotFound(FamilyError, NotFoundError):
    def __init__(self, message: str = "Family not found", family_id: Optional[str] = None):
        super().__init__(message, error_code="FAMILY_NOT_FOUND", context={"family_id": family_id})


class MemberNotFound(FamilyError, NotFoundError):
    def __init__(self, message: str = "User not found"):
        super().__init__(message, error_code="USER_NOT_FOUND")


class JoinRequestNotFound(FamilyError, NotFoundError):
    def __init__(self, message: str = "Join request not found", request_id: Optional[str] = None):
        super().__init__(message, error_code="JOIN_REQUEST_NOT_FOUND", context={"request_id": request_id})


class InvitationNotFound(FamilyError, NotFoundError):
    def __init__(self, message: str = "No pending invitation"):
        super().__init__(message, error_code="INVITATION_NOT_FOUND")


class NotInFamily(FamilyError, ValidationError):
    def __init__(self, message: str = "Not in a family"):
        super().__init__(message, errors=[message], error_code="NOT_IN_FAMILY")


class NoPendingInvitation(FamilyError, ValidationError):
    def __init__(self, message: str = "No pending invitation"):
        super().__init__(message, errors=[message], error_code="NO_PENDING_INVITATION")


class AlreadyInFamily(FamilyError, ConflictError):
    def __init__(self, message: str = "Already in a family"):
        super().__init__(message, error_code="ALREADY_IN_FAMILY")


class FamilyFull(FamilyError, ConflictError):
    def __init__(self, family_id: Optional[str] = None, max_size: Optional[int] = None):
        super().__init__("Family full", error_code="FAMILY_FULL", context={"family_id": family_id, "max_size": max_size})


class FamilyConflict(FamilyError, ConflictError):
    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(message, error_code=error_code)


class NotFamilyHead(FamilyError, AccessDeniedError):
    def __init__(self, message: str = "Only head can perform this action"):
        super().__init__(message, error_code="INSUFFICIENT_PERMISSIONS")


class NotRequestOwner(FamilyError, AccessDeniedError):
    def __init__(self):
        super().__init__("Not owner of request", error_code="INSUFFICIENT_PERMISSIONS")


class ConcurrentFamilyUpdate(FamilyError, RetryableError):
    def __init__(self, family_id: str):
        super().__init__(
            "The family was modified concurrently. Please try again.",
            error_code="CONCURRENT_UPDATE",
            context={"family_id": family_id},
        )


class JoinRequestThrottled(FamilyError, ConflictError):
    """Too many join requests to one family within the attempt window."""

    def __init__(self, attempts: int, window_millis: int, max_attempts: int, window_start: int):
        super().__init__(
            "Max retries over. Ask family owner to send",
            error_code="CONFLICT",
            context={
                "reason": "MAX_RETRIES",
                "attemptsInWindow": attempts,
                "windowMillis": window_millis,
                "maxAttemptsPerWindow": max_attempts,
                "windowStart": window_start,
            },
        )

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update(self.context)
        return detail


# --- Validation ---


def validate_family_name(name: Optional[str]) -> Optional[str]:
    """Return the first violation message, or None when the name is acceptable."""
    if name is None or not name.strip():
        return "Family name cannot be blank"
    if len(name) < FAMILY_NAME_MIN_LENGTH:
        return f"Family name must be at least {FAMILY_NAME_MIN_LENGTH} characters"
    if len(name) > FAMILY_NAME_MAX_LENGTH:
        return f"Family name cannot exceed {FAMILY_NAME_MAX_LENGTH} characters"
    if name.strip() != name:
        return "Family name cannot have leading or trailing spaces"
    if not FAMILY_NAME_PATTERN.match(name):
        return "Family name contains invalid characters"
    return None


def validate_email(email: Optional[str]) -> Optional[str]:
    if email is None or not email.strip():
        return "Email cannot be blank"
    if not EMAIL_PATTERN.match(email):
        return "Invalid email format"
    if len(email) > EMAIL_MAX_LENGTH:
        return "Email is too long"
    return None


def validate_alias_name(alias: Optional[str]) -> Optional[str]:
    if alias is None or not alias.strip():
        return "Alias name cannot be blank"
    if len(alias) != settings.ALIAS_LENGTH:
        return f"Alias name must be exactly {settings.ALIAS_LENGTH} characters"
    if not ALIAS_PATTERN.match(alias):
        return "Alias name must contain only uppercase letters and numbers"
    return None


def _raise_if_invalid(message: Optional[str]) -> None:
    if message:
        raise FamilyValidationError(message)


def _strip_id(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if document is not None:
        document.pop("_id", None)
    return document


class FamilyManager:
    """
    Family membership workflow.

    Every public method takes the acting user's document as loaded by the auth dependency and
    returns a response-ready dict.
    """

    def __init__(self, db_manager=None, notifications: Optional[NotificationManager] = None):
        self.db_manager = db_manager or default_db_manager
        self.notifications = notifications or default_notification_manager
        self.logger = logger

    # --- Collections and lookups ---

    def _families(self):
        return self.db_manager.get_collection(FAMILIES_COLLECTION)

    def _users(self):
        return self.db_manager.get_collection(USERS_COLLECTION)

    def _join_requests(self):
        return self.db_manager.get_collection(JOIN_REQUESTS_COLLECTION)

    async def _get_family(self, family_id: str) -> Optional[Dict[str, Any]]:
        return _strip_id(await self._families().find_one({"familyId": family_id}))

    async def _get_family_by_alias(self, alias: str) -> Dict[str, Any]:
        family = _strip_id(await self._families().find_one({"aliasName": alias.strip()}))
        if not family:
            raise FamilyNotFound()
        return family

    async def _get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._users().find_one({"id": user_id}, {"_id": 0})

    async def _get_user_by_email(self, email: str) -> Dict[str, Any]:
        user = await self._users().find_one({"email": email.strip().lower()}, {"_id": 0})
        if not user:
            raise MemberNotFound()
        return user

    async def _list_members(self, family: Dict[str, Any]) -> List[Dict[str, Any]]:
        member_ids = family.get("membersIds", [])
        members = await self._users().find({"id": {"$in": member_ids}}, MEMBER_PROJECTION).to_list(length=None)
        by_id = {member["id"]: member for member in members}
        return [by_id[member_id] for member_id in member_ids if member_id in by_id]

    async def _family_response(self, family: Dict[str, Any], message: Optional[str] = None) -> Dict[str, Any]:
        response: Dict[str, Any] = {"family": family, "members": await self._list_members(family)}
        if message:
            response = {"message": message, "data": response}
        return response

    async def _current_family(self, user: Dict[str, Any]) -> Dict[str, Any]:
        family_id = user.get("familyId")
        if is_blank(family_id):
            raise NotInFamily()
        family = await self._get_family(family_id)
        if not family:
            raise FamilyNotFound(family_id=family_id)
        return family

    async def _headed_family(self, user: Dict[str, Any], action: str) -> Dict[str, Any]:
        family = await self._current_family(user)
        if family["headId"] != user["id"]:
            raise NotFamilyHead(f"Only head can {action}")
        return family

    @staticmethod
    def _is_full(family: Dict[str, Any]) -> bool:
        return len(family.get("membersIds", [])) >= family.get("maxSize", settings.FAMILY_MAX_SIZE)

    # --- Membership primitives ---

    async def _claim_user(self, user_id: str, family_id: str, session) -> None:
        """Point the user at the family, only if they are in no family."""
        result = await self._users().update_one(
            {"id": user_id, "familyId": None},
            {"$set": {"familyId": family_id, "updatedAt": now_millis()}},
            session=session,
        )
        if result.modified_count == 0:
            raise AlreadyInFamily("User already in a family")

    async def _release_user(self, user_id: str, family_id: str, session) -> None:
        await self._users().update_one(
            {"id": user_id, "familyId": family_id},
            {"$set": {"familyId": None, "updatedAt": now_millis()}},
            session=session,
        )

    async def _push_member(
        self, family: Dict[str, Any], user_id: str, session, pull_email: Optional[str] = None
    ) -> None:
        """
        Append a member while the family still has room.

        The filter only matches if the user is not a member and the element at index
        maxSize - 1 does not exist, so two concurrent joins cannot both take the last slot.
        """
        family_id = family["familyId"]
        max_size = family.get("maxSize", settings.FAMILY_MAX_SIZE)
        pull: Dict[str, Any] = {"pendingJoinRequests": user_id}
        if pull_email:
            pull["pendingMemberEmails"] = pull_email
        query = {
            "familyId": family_id,
            "maxSize": max_size,
            "membersIds": {"$ne": user_id},
            f"membersIds.{max_size - 1}": {"$exists": False},
        }
        start_time = self.db_manager.log_query_start(FAMILIES_COLLECTION, "push_member", query)
        result = await self._families().update_one(
            query,
            {"$push": {"membersIds": user_id}, "$pull": pull, "$set": {"updatedAt": now_millis()}},
            session=session,
        )
        self.db_manager.log_query_success(FAMILIES_COLLECTION, "push_member", start_time, result.modified_count)
        if result.modified_count:
            return

        current = await self._families().find_one({"familyId": family_id}, session=session)
        if not current:
            raise FamilyNotFound(family_id=family_id)
        if user_id in current.get("membersIds", []):
            raise FamilyConflict("Already a member", error_code="ALREADY_MEMBER")
        if self._is_full(current):
            raise FamilyFull(family_id, current.get("maxSize"))
        raise ConcurrentFamilyUpdate(family_id)

    async def _cancel_pending_requests_of(self, user_id: str, session, family_id: Optional[str] = None) -> None:
        """Close a user's PENDING join requests and drop them from the families' pending lists."""
        query: Dict[str, Any] = {"requesterId": user_id, "status": JoinRequestStatus.PENDING.value}
        if family_id:
            query["familyId"] = family_id
        pending = await self._join_requests().find(query, {"familyId": 1}).to_list(length=None)
        if not pending:
            return
        now = now_millis()
        await self._join_requests().update_many(
            query, {"$set": {"status": JoinRequestStatus.CANCELLED.value, "updatedAt": now}}, session=session
        )
        family_ids = list({request["familyId"] for request in pending})
        await self._families().update_many(
            {"familyId": {"$in": family_ids}},
            {"$pull": {"pendingJoinRequests": user_id}, "$set": {"updatedAt": now}},
            session=session,
        )

    async def _add_member(
        self,
        family: Dict[str, Any],
        user_id: str,
        pull_email: Optional[str] = None,
        accepted_request: Optional[Tuple[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make ``user_id`` a member of ``family`` as one unit of work.

        ``accepted_request`` is (request id, processed by) for join request approvals.
        Retries when the family changed underneath without being full.
        """
        context = ErrorContext(operation="add_member", user_id=user_id, family_id=family["familyId"])

        async def attempt() -> Dict[str, Any]:
            async with self.db_manager.transaction() as session:
                await self._claim_user(user_id, family["familyId"], session)
                try:
                    await self._push_member(family, user_id, session, pull_email=pull_email)
                except FamilyError:
                    if session is None:
                        await self._release_user(user_id, family["familyId"], None)
                    raise
                if accepted_request:
                    request_id, processed_by = accepted_request
                    await self._join_requests().update_one(
                        {"id": request_id},
                        {
                            "$set": {
                                "status": JoinRequestStatus.ACCEPTED.value,
                                "processedBy": processed_by,
                                "updatedAt": now_millis(),
                            }
                        },
                        session=session,
                    )
                await self._cancel_pending_requests_of(user_id, session)
            return await self._get_family(family["familyId"])

        config = RetryConfig(
            max_attempts=JOIN_RETRY_CONFIG.max_attempts,
            initial_delay=JOIN_RETRY_CONFIG.initial_delay,
            retryable_exceptions=[ConcurrentFamilyUpdate],
        )
        return await retry_with_backoff(attempt, config, context)

    # --- Join request helpers ---

    async def _join_request_throttle(self, user_id: str, family_id: str) -> None:
        """
        Allow at most JOIN_REQUEST_MAX_ATTEMPTS counted requests per family per window.

        Requests the requester cancelled are not counted; requests replaced by a resend are.
        """
        now = now_millis()
        window_millis = settings.JOIN_REQUEST_ATTEMPT_WINDOW_DAYS * 24 * 60 * 60 * 1000
        window_start = now - window_millis
        attempts = await self._join_requests().find(
            {"requesterId": user_id, "familyId": family_id, "createdAt": {"$gte": window_start}}
        ).to_list(length=None)
        counted = [
            attempt
            for attempt in attempts
            if attempt.get("status") != JoinRequestStatus.CANCELLED.value or attempt.get("supersededBy")
        ]
        if len(counted) >= settings.JOIN_REQUEST_MAX_ATTEMPTS:
            self.logger.info("Join request throttled for user %s on family %s", user_id, family_id)
            raise JoinRequestThrottled(len(counted), window_millis, settings.JOIN_REQUEST_MAX_ATTEMPTS, window_start)

    async def _find_pending_request(self, user_id: str, family_id: str) -> Optional[Dict[str, Any]]:
        return _strip_id(
            await self._join_requests().find_one(
                {"requesterId": user_id, "familyId": family_id, "status": JoinRequestStatus.PENDING.value},
                sort=[("createdAt", DESCENDING)],
            )
        )

    async def _get_join_request(self, request_id: str) -> Dict[str, Any]:
        request = _strip_id(await self._join_requests().find_one({"id": request_id}))
        if not request:
            raise JoinRequestNotFound(request_id=request_id)
        return request

    async def _open_join_request(
        self, user: Dict[str, Any], family: Dict[str, Any], message: Optional[str], supersede: bool
    ) -> Dict[str, Any]:
        """Insert a PENDING request and list the requester on the family, superseding older ones if asked."""
        now = now_millis()
        join_request = {
            "id": str(uuid.uuid4()),
            "requesterId": user["id"],
            "familyId": family["familyId"],
            "message": message,
            "status": JoinRequestStatus.PENDING.value,
            "processedBy": None,
            "createdAt": now,
            "updatedAt": now,
        }
        async with self.db_manager.transaction() as session:
            if supersede:
                await self._join_requests().update_many(
                    {"requesterId": user["id"], "familyId": family["familyId"], "status": JoinRequestStatus.PENDING.value},
                    {
                        "$set": {
                            "status": JoinRequestStatus.CANCELLED.value,
                            "supersededBy": join_request["id"],
                            "updatedAt": now,
                        }
                    },
                    session=session,
                )
            await self._join_requests().insert_one(join_request, session=session)
            await self._families().update_one(
                {"familyId": family["familyId"]},
                {"$addToSet": {"pendingJoinRequests": user["id"]}, "$set": {"updatedAt": now}},
                session=session,
            )
        _strip_id(join_request)
        await self._notify_head_of_join_request(user, family, join_request)
        return join_request

    # --- Notifications ---

    async def _notify(
        self,
        receiver: Optional[Dict[str, Any]],
        sender: Dict[str, Any],
        family: Dict[str, Any],
        notification_type: NotificationType,
        title: str,
        message: str,
        actionable: bool = False,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not receiver:
            return
        data = {
            "familyId": family["familyId"],
            "familyAlias": family.get("aliasName"),
            "familyName": family.get("name"),
            "senderId": sender["id"],
            "senderName": display_name(sender),
            "senderEmail": sender.get("email"),
        }
        data.update(extra or {})
        await self.notifications.notify_user(
            receiver, sender, notification_type, title, message, family=family, data=data, actionable=actionable
        )

    async def _notify_head_of_join_request(
        self, user: Dict[str, Any], family: Dict[str, Any], join_request: Dict[str, Any]
    ) -> None:
        head = await self._get_user(family["headId"])
        await self._notify(
            head,
            user,
            family,
            NotificationType.JOIN_FAMILY_REQUEST,
            "New Family Join Request",
            f"{display_name(user)} wants to join your family '{family['name']}'",
            actionable=True,
            extra={"requesterId": user["id"], "joinRequestId": join_request["id"]},
        )

    # --- Operations ---

    async def create_family(self, user: Dict[str, Any], name: str) -> Dict[str, Any]:
        """Create a family with the acting user as sole member and head."""
        _raise_if_invalid(validate_family_name(name))
        if not is_blank(user.get("familyId")):
            raise AlreadyInFamily()

        context = ErrorContext(operation="create_family", user_id=user["id"])

        async def attempt() -> Dict[str, Any]:
            now = now_millis()
            family = {
                "familyId": str(uuid.uuid4()),
                "headId": user["id"],
                "name": name.strip(),
                "aliasName": await generate_unique_alias(self._families()),
                "maxSize": settings.FAMILY_MAX_SIZE,
                "membersIds": [user["id"]],
                "pendingMemberEmails": [],
                "pendingJoinRequests": [],
                "createdAt": now,
                "updatedAt": now,
            }
            async with self.db_manager.transaction() as session:
                await self._families().insert_one(family, session=session)
                try:
                    await self._claim_user(user["id"], family["familyId"], session)
                except AlreadyInFamily:
                    if session is None:
                        await self._families().delete_one({"familyId": family["familyId"]})
                    raise AlreadyInFamily()
                await self._cancel_pending_requests_of(user["id"], session)
            return _strip_id(family)

        # A unique-index collision on the alias means another family took it meanwhile
        family = await retry_with_backoff(
            attempt, RetryConfig(max_attempts=3, retryable_exceptions=[DuplicateKeyError]), context
        )
        self.logger.info("Family %s created by %s", family["familyId"], user["id"])
        return await self._family_response(family, "Family created successfully")

    async def get_family_details(self, user: Dict[str, Any]) -> Dict[str, Any]:
        family = await self._current_family(user)
        return await self._family_response(family)

    async def join_family(self, user: Dict[str, Any], alias_name: str) -> Dict[str, Any]:
        """Join directly by alias code."""
        _raise_if_invalid(validate_alias_name(alias_name))
        if not is_blank(user.get("familyId")):
            raise AlreadyInFamily()
        family = await self._get_family_by_alias(alias_name)
        if self._is_full(family):
            raise FamilyFull(family["familyId"], family.get("maxSize"))

        updated = await self._add_member(family, user["id"])
        head = await self._get_user(updated["headId"])
        await self._notify(
            head,
            user,
            updated,
            NotificationType.FAMILY_MEMBER_JOINED,
            "New Family Member",
            f"{display_name(user)} joined your family '{updated['name']}'",
        )
        self.logger.info("User %s joined family %s", user["id"], updated["familyId"])
        return await self._family_response(updated, "Joined family successfully")

    async def request_to_join(
        self,
        user: Dict[str, Any],
        alias_name: Optional[str] = None,
        family_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ask the head of a family (by alias or id) to let the user in."""
        if family_id is None:
            _raise_if_invalid(validate_alias_name(alias_name))
        if not is_blank(user.get("familyId")):
            raise AlreadyInFamily()
        if family_id is not None:
            family = await self._get_family(family_id)
            if not family:
                raise FamilyNotFound(family_id=family_id)
        else:
            family = await self._get_family_by_alias(alias_name)
        if self._is_full(family):
            raise FamilyFull(family["familyId"], family.get("maxSize"))
        if user.get("email") in family.get("pendingMemberEmails", []):
            raise FamilyConflict("You already have a pending invitation from this family", "ALREADY_INVITED")
        if await self._find_pending_request(user["id"], family["familyId"]):
            raise FamilyConflict("Join request already pending", "JOIN_REQUEST_PENDING")
        await self._join_request_throttle(user["id"], family["familyId"])

        join_request = await self._open_join_request(user, family, message, supersede=False)
        self.logger.info("Join request %s sent to family %s", join_request["id"], family["familyId"])
        return {
            "message": "Join request sent successfully",
            "familyName": family["name"],
            "familyAlias": family["aliasName"],
            "status": "pending",
            "requestId": join_request["id"],
        }

    async def list_sent_join_requests(self, user: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self._join_requests().find({"requesterId": user["id"]}, {"_id": 0}).sort("createdAt", DESCENDING)
        return await cursor.to_list(length=None)

    async def get_own_pending_join_requests(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """Latest PENDING request per family, with a family summary."""
        pending = await self._join_requests().find(
            {"requesterId": user["id"], "status": JoinRequestStatus.PENDING.value}, {"_id": 0}
        ).to_list(length=None)
        latest: Dict[str, Dict[str, Any]] = {}
        for request in pending:
            current = latest.get(request["familyId"])
            if current is None or request["createdAt"] > current["createdAt"]:
                latest[request["familyId"]] = request

        enriched = []
        for request in sorted(latest.values(), key=lambda r: r["createdAt"], reverse=True):
            family = await self._get_family(request["familyId"])
            if not family:
                continue
            enriched.append(
                {
                    "request": request,
                    "family": {
                        "familyId": family["familyId"],
                        "name": family["name"],
                        "alias": family["aliasName"],
                        "headId": family["headId"],
                        "memberCount": len(family.get("membersIds", [])),
                        "maxSize": family.get("maxSize"),
                    },
                }
            )
        return {"pendingJoinRequests": enriched}

    async def cancel_own_join_request(
        self, user: Dict[str, Any], alias_name: Optional[str] = None, request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if request_id:
            join_request = await self._get_join_request(request_id)
            if join_request["requesterId"] != user["id"]:
                raise NotRequestOwner()
            if join_request["status"] != JoinRequestStatus.PENDING.value:
                raise FamilyConflict("Join request is not pending", "JOIN_REQUEST_NOT_PENDING")
            family = await self._get_family(join_request["familyId"])
            if not family:
                raise FamilyNotFound(family_id=join_request["familyId"])
        else:
            _raise_if_invalid(validate_alias_name(alias_name))
            family = await self._get_family_by_alias(alias_name)
            join_request = await self._find_pending_request(user["id"], family["familyId"])
            if not join_request:
                raise JoinRequestNotFound("No pending join request to cancel")

        now = now_millis()
        async with self.db_manager.transaction() as session:
            await self._join_requests().update_one(
                {"id": join_request["id"]},
                {"$set": {"status": JoinRequestStatus.CANCELLED.value, "updatedAt": now}},
                session=session,
            )
            await self._families().update_one(
                {"familyId": family["familyId"]},
                {"$pull": {"pendingJoinRequests": user["id"]}, "$set": {"updatedAt": now}},
                session=session,
            )
        join_request.update({"status": JoinRequestStatus.CANCELLED.value, "updatedAt": now})
        return {"message": "Join request cancelled", "request": join_request}

    async def resend_own_join_request(
        self,
        user: Dict[str, Any],
        alias_name: Optional[str] = None,
        request_id: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace the user's pending request to a family with a fresh one, subject to the throttle."""
        if request_id:
            previous = await self._get_join_request(request_id)
            if previous["requesterId"] != user["id"]:
                raise NotRequestOwner()
            if previous["status"] == JoinRequestStatus.ACCEPTED.value:
                raise FamilyConflict("Already accepted", "JOIN_REQUEST_ACCEPTED")
            family = await self._get_family(previous["familyId"])
            if not family:
                raise FamilyNotFound(family_id=previous["familyId"])
        else:
            _raise_if_invalid(validate_alias_name(alias_name))
            family = await self._get_family_by_alias(alias_name)

        if user["id"] in family.get("membersIds", []):
            raise FamilyConflict("Already a member", "ALREADY_MEMBER")
        if not is_blank(user.get("familyId")):
            raise AlreadyInFamily()
        if self._is_full(family):
            raise FamilyFull(family["familyId"], family.get("maxSize"))
        await self._join_request_throttle(user["id"], family["familyId"])

        join_request = await self._open_join_request(user, family, message, supersede=True)
        return {"message": "Join request sent", "requestId": join_request["id"]}

    async def list_received_join_requests(
        self, head: Dict[str, Any], family_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """PENDING requests for the head's family, each with the requester's public profile."""
        family = await self._headed_family(head, "view join requests")
        if family_id and family_id != family["familyId"]:
            raise NotFamilyHead("Only head can view join requests")
        requests = await self._join_requests().find(
            {"familyId": family["familyId"], "status": JoinRequestStatus.PENDING.value}, {"_id": 0}
        ).sort("createdAt", DESCENDING).to_list(length=None)
        for request in requests:
            request["requester"] = await self._users().find_one({"id": request["requesterId"]}, MEMBER_PROJECTION)
        return requests

    async def _resolve_request_for_head(
        self, family: Dict[str, Any], requester_id: Optional[str], request_id: Optional[str]
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Find the requester and their PENDING request record for an accept/reject by the head."""
        if request_id:
            join_request = await self._get_join_request(request_id)
            if join_request["familyId"] != family["familyId"]:
                raise JoinRequestNotFound(request_id=request_id)
            if join_request["status"] != JoinRequestStatus.PENDING.value:
                raise FamilyConflict("Join request is not pending", "JOIN_REQUEST_NOT_PENDING")
            requester_id = join_request["requesterId"]
        else:
            if is_blank(requester_id):
                raise FamilyValidationError("Requester ID cannot be blank")
            join_request = await self._find_pending_request(requester_id, family["familyId"])
            if not join_request and requester_id not in family.get("pendingJoinRequests", []):
                raise JoinRequestNotFound("No pending join request")
        requester = await self._get_user(requester_id)
        if not requester:
            raise MemberNotFound()
        return requester, join_request

    async def accept_join_request(
        self, head: Dict[str, Any], requester_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        family = await self._headed_family(head, "accept")
        requester, join_request = await self._resolve_request_for_head(family, requester_id, request_id)
        if not is_blank(requester.get("familyId")):
            raise AlreadyInFamily("User already in a family")
        if self._is_full(family):
            raise FamilyFull(family["familyId"], family.get("maxSize"))

        accepted = (join_request["id"], head["id"]) if join_request else None
        updated = await self._add_member(family, requester["id"], accepted_request=accepted)
        await self._notify(
            requester,
            head,
            updated,
            NotificationType.JOIN_FAMILY_REQUEST_ACCEPTED,
            "Join Request Accepted",
            f"Your request to join the family '{updated['name']}' has been accepted.",
        )
        self.logger.info("Join request of %s accepted into family %s", requester["id"], family["familyId"])
        return await self._family_response(updated, "Join request accepted")

    async def reject_join_request(
        self, head: Dict[str, Any], requester_id: Optional[str] = None, request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        family = await self._headed_family(head, "reject")
        requester, join_request = await self._resolve_request_for_head(family, requester_id, request_id)

        now = now_millis()
        async with self.db_manager.transaction() as session:
            await self._families().update_one(
                {"familyId": family["familyId"]},
                {"$pull": {"pendingJoinRequests": requester["id"]}, "$set": {"updatedAt": now}},
                session=session,
            )
            if join_request:
                await self._join_requests().update_one(
                    {"id": join_request["id"]},
                    {
                        "$set": {
                            "status": JoinRequestStatus.REJECTED.value,
                            "processedBy": head["id"],
                            "updatedAt": now,
                        }
                    },
                    session=session,
                )
        updated = await self._get_family(family["familyId"])
        await self._notify(
            requester,
            head,
            updated,
            NotificationType.JOIN_FAMILY_REQUEST_REJECTED,
            "Join Request Rejected",
            f"Your request to join the family '{updated['name']}' has been rejected.",
        )
        return await self._family_response(updated, "Join request rejected")

    async def leave_family(self, user: Dict[str, Any]) -> Dict[str, Any]:
        """
        Leave the current family.

        The last member leaving deletes the family. A head leaving a non-empty family hands
        the role to the first remaining member, who is notified.
        """
        family = await self._current_family(user)
        if user["id"] not in family.get("membersIds", []):
            raise FamilyValidationError("Not a member of this family")

        remaining = [member_id for member_id in family["membersIds"] if member_id != user["id"]]
        now = now_millis()
        if not remaining:
            async with self.db_manager.transaction() as session:
                await self._families().delete_one({"familyId": family["familyId"]}, session=session)
                await self._release_user(user["id"], family["familyId"], session)
                await self._join_requests().update_many(
                    {"familyId": family["familyId"], "status": JoinRequestStatus.PENDING.value},
                    {"$set": {"status": JoinRequestStatus.CANCELLED.value, "updatedAt": now}},
                    session=session,
                )
            self.logger.info("Family %s deleted after last member left", family["familyId"])
            return {"message": "Family deleted"}

        new_head_id = remaining[0] if family["headId"] == user["id"] else family["headId"]
        async with self.db_manager.transaction() as session:
            result = await self._families().update_one(
                {"familyId": family["familyId"], "membersIds": user["id"]},
                {"$pull": {"membersIds": user["id"]}, "$set": {"headId": new_head_id, "updatedAt": now}},
                session=session,
            )
            if result.modified_count == 0:
                raise ConcurrentFamilyUpdate(family["familyId"])
            await self._release_user(user["id"], family["familyId"], session)

        updated = await self._get_family(family["familyId"])
        head = await self._get_user(new_head_id)
        if new_head_id != family["headId"]:
            self.logger.info("Head of family %s reassigned to %s", family["familyId"], new_head_id)
            await self._notify(
                head,
                user,
                updated,
                NotificationType.FAMILY_MEMBER_LEFT,
                "You are now the family head",
                f"{display_name(user)} left the family '{family['name']}'. You are now the head of the family.",
            )
        else:
            await self._notify(
                head,
                user,
                updated,
                NotificationType.FAMILY_MEMBER_LEFT,
                "Member Left Family",
                f"{display_name(user)} left the family '{family['name']}'.",
            )
        return {"message": "Left family successfully"}

    async def invite_member(self, head: Dict[str, Any], email: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_email(email))
        email = email.strip().lower()
        family = await self._headed_family(head, "invite")
        invited = await self._get_user_by_email(email)
        if not is_blank(invited.get("familyId")):
            raise FamilyConflict("User already in a family", "ALREADY_IN_FAMILY")
        if email in family.get("pendingMemberEmails", []):
            raise FamilyConflict("Already invited", "ALREADY_INVITED")
        if invited["id"] in family.get("pendingJoinRequests", []):
            raise FamilyConflict(
                "User has already requested to join. Accept the join request instead", "JOIN_REQUEST_PENDING"
            )

        result = await self._families().update_one(
            {"familyId": family["familyId"], "pendingMemberEmails": {"$ne": email}},
            {"$push": {"pendingMemberEmails": email}, "$set": {"updatedAt": now_millis()}},
        )
        if result.modified_count == 0:
            raise FamilyConflict("Already invited", "ALREADY_INVITED")
        updated = await self._get_family(family["familyId"])
        await self._send_invitation(invited, updated, head)
        self.logger.info("User %s invited to family %s", invited["id"], family["familyId"])
        return await self._family_response(updated, f"Invitation sent to {email} and is pending acceptance")

    async def _send_invitation(self, invited: Dict[str, Any], family: Dict[str, Any], head: Dict[str, Any]) -> None:
        await self._notify(
            invited,
            head,
            family,
            NotificationType.JOIN_FAMILY_INVITATION,
            "Family Invitation",
            f"You have been invited to join the family '{family['name']}' by {display_name(head)}.",
            actionable=True,
        )

    async def resend_invitation(self, head: Dict[str, Any], email: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_email(email))
        email = email.strip().lower()
        family = await self._headed_family(head, "resend")
        invited = await self._get_user_by_email(email)
        if not is_blank(invited.get("familyId")):
            raise FamilyConflict("User already in a family", "ALREADY_IN_FAMILY")
        if email not in family.get("pendingMemberEmails", []):
            raise FamilyConflict("No pending invitation. Send new", "NO_PENDING_INVITATION")
        await self._send_invitation(invited, family, head)
        return await self._family_response(family, f"Invitation resent to {email} successfully")

    async def cancel_invitation(self, head: Dict[str, Any], email: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_email(email))
        email = email.strip().lower()
        family = await self._headed_family(head, "cancel")
        if email not in family.get("pendingMemberEmails", []):
            raise InvitationNotFound()

        await self._families().update_one(
            {"familyId": family["familyId"]},
            {"$pull": {"pendingMemberEmails": email}, "$set": {"updatedAt": now_millis()}},
        )
        updated = await self._get_family(family["familyId"])
        invited = await self._users().find_one({"email": email}, {"_id": 0})
        await self._notify(
            invited,
            head,
            updated,
            NotificationType.JOIN_FAMILY_INVITATION_CANCELLED,
            "Invitation Cancelled",
            f"The invitation to join the family '{updated['name']}' has been cancelled.",
        )
        return await self._family_response(updated, "Invitation cancelled successfully")

    async def accept_invitation(self, user: Dict[str, Any], alias_name: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_alias_name(alias_name))
        if not is_blank(user.get("familyId")):
            raise AlreadyInFamily()
        family = await self._get_family_by_alias(alias_name)
        if user.get("email") not in family.get("pendingMemberEmails", []):
            raise NoPendingInvitation()
        if self._is_full(family):
            raise FamilyFull(family["familyId"], family.get("maxSize"))

        updated = await self._add_member(family, user["id"], pull_email=user["email"])
        head = await self._get_user(updated["headId"])
        await self._notify(
            head,
            user,
            updated,
            NotificationType.JOIN_FAMILY_INVITATION_ACCEPTED,
            "Invitation Accepted",
            f"{display_name(user)} ({user['email']}) has accepted your invitation to join the family '{updated['name']}'.",
        )
        return await self._family_response(updated, "Family invitation accepted successfully.")

    async def reject_invitation(self, user: Dict[str, Any], alias_name: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_alias_name(alias_name))
        family = await self._get_family_by_alias(alias_name)
        if user.get("email") not in family.get("pendingMemberEmails", []):
            raise NoPendingInvitation()

        await self._families().update_one(
            {"familyId": family["familyId"]},
            {"$pull": {"pendingMemberEmails": user["email"]}, "$set": {"updatedAt": now_millis()}},
        )
        updated = await self._get_family(family["familyId"])
        head = await self._get_user(updated["headId"])
        await self._notify(
            head,
            user,
            updated,
            NotificationType.JOIN_FAMILY_INVITATION_REJECTED,
            "Invitation Rejected",
            f"{display_name(user)} ({user['email']}) has rejected your invitation to join the family '{updated['name']}'.",
        )
        return await self._family_response(updated, "Family invitation rejected")

    async def remove_member(self, head: Dict[str, Any], member_email: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_email(member_email))
        family = await self._headed_family(head, "remove")
        member = await self._get_user_by_email(member_email)
        if member["id"] == head["id"]:
            raise FamilyValidationError("Head cannot remove self")
        if member.get("familyId") != family["familyId"] or member["id"] not in family.get("membersIds", []):
            raise FamilyValidationError("Member not in this family")

        async with self.db_manager.transaction() as session:
            await self._families().update_one(
                {"familyId": family["familyId"]},
                {"$pull": {"membersIds": member["id"]}, "$set": {"updatedAt": now_millis()}},
                session=session,
            )
            await self._release_user(member["id"], family["familyId"], session)
        updated = await self._get_family(family["familyId"])
        await self._notify(
            member,
            head,
            updated,
            NotificationType.FAMILY_MEMBER_REMOVED,
            "Removed from Family",
            f"You have been removed from the family '{updated['name']}' by the family head.",
        )
        self.logger.info("Member %s removed from family %s", member["id"], family["familyId"])
        return await self._family_response(updated, "Member removed from family successfully")

    async def update_family_name(self, head: Dict[str, Any], name: str) -> Dict[str, Any]:
        _raise_if_invalid(validate_family_name(name))
        family = await self._headed_family(head, "update name")
        new_name = name.strip()
        conflict = await self._families().find_one(
            {
                "name": {"$regex": f"^{re.escape(new_name)}$", "$options": "i"},
                "familyId": {"$ne": family["familyId"]},
            },
            {"_id": 1},
        )
        if conflict:
            raise FamilyConflict("Family name already in use", "FAMILY_NAME_IN_USE")
        await self._families().update_one(
            {"familyId": family["familyId"]}, {"$set": {"name": new_name, "updatedAt": now_millis()}}
        )
        updated = await self._get_family(family["familyId"])
        return await self._family_response(updated, "Family name updated successfully")


family_manager = FamilyManager()
