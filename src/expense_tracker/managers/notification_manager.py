"""
Notification inbox, recipient resolution and delivery helpers.

Every user-facing event produces a persisted Notification row for the receiver's inbox and a
best-effort push to the receiver's devices. Failures while saving or pushing are logged and
swallowed: a membership change or an expense write never fails because a notification could
not be delivered.

Recipient resolution (resolve_recipients) maps a Scope to device tokens and has no knowledge
of the push client, so it can be exercised against the database alone.
"""

from typing import Any, Dict, List, Optional
import uuid

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from expense_tracker.database import db_manager as default_db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.push_manager import PushMessage, PushResult, push_manager as default_push_manager
from expense_tracker.models import FamilyScope, NotificationType, PersonalScope, Scope, is_blank, now_millis
from expense_tracker.utils.error_handling import NotFoundError

logger = get_logger(prefix="[NotificationManager]")

NOTIFICATIONS_COLLECTION = "notifications"
USERS_COLLECTION = "users"
DEVICES_COLLECTION = "user_devices"
FAMILIES_COLLECTION = "families"

# Column limits of the inbox record
MAX_TITLE_LENGTH = 255
MAX_MESSAGE_LENGTH = 1000
MAX_FAMILY_ID_LENGTH = 50
MAX_FAMILY_ALIAS_LENGTH = 10
MAX_SENDER_NAME_LENGTH = 100
MAX_USER_ID_LENGTH = 50
DEFAULT_SENDER_NAME = "Unknown User"

UPDATABLE_FIELDS = {"isRead", "actionable"}


class NotificationNotFound(NotFoundError):
    def __init__(self, notification_id: str):
        super().__init__(
            f"Notification with ID '{notification_id}' not found",
            error_code="NOTIFICATION_NOT_FOUND",
            context={"notification_id": notification_id},
        )


def build_notification(
    title: str,
    message: str,
    receiver_id: str,
    notification_type: NotificationType,
    sender_id: Optional[str] = None,
    sender_name: Optional[str] = None,
    family_id: Optional[str] = None,
    family_alias: Optional[str] = None,
    actionable: bool = False,
) -> Dict[str, Any]:
    """Build an inbox document, truncating each field to its column limit."""
    return {
        "id": str(uuid.uuid4()),
        "title": (title or "")[:MAX_TITLE_LENGTH],
        "message": (message or "")[:MAX_MESSAGE_LENGTH],
        "timestamp": now_millis(),
        "isRead": False,
        "familyId": (family_id or "")[:MAX_FAMILY_ID_LENGTH],
        "familyAlias": (family_alias or "")[:MAX_FAMILY_ALIAS_LENGTH],
        "senderName": (sender_name or DEFAULT_SENDER_NAME)[:MAX_SENDER_NAME_LENGTH],
        "senderId": (sender_id or "")[:MAX_USER_ID_LENGTH],
        "receiverId": (receiver_id or "")[:MAX_USER_ID_LENGTH],
        "actionable": actionable,
        "type": notification_type.value,
    }


def display_name(user: Optional[Dict[str, Any]]) -> str:
    if not user:
        return DEFAULT_SENDER_NAME
    return user.get("name") or user.get("email") or DEFAULT_SENDER_NAME


class NotificationManager:
    """Inbox CRUD plus the fan-out used by the family and expense workflows."""

    def __init__(self, db_manager=None, push=None):
        self.db_manager = db_manager or default_db_manager
        self.push = push or default_push_manager
        self.logger = logger

    def _collection(self, name: str):
        return self.db_manager.get_collection(name)

    # --- Inbox ---

    async def create_notification(self, document: Dict[str, Any]) -> Dict[str, Any]:
        collection = self._collection(NOTIFICATIONS_COLLECTION)
        start_time = self.db_manager.log_query_start(NOTIFICATIONS_COLLECTION, "insert_one")
        await collection.insert_one(document)
        self.db_manager.log_query_success(NOTIFICATIONS_COLLECTION, "insert_one", start_time, 1)
        document.pop("_id", None)
        return document

    async def list_for_receiver(self, user_id: str, unread_only: bool = False, limit: int = 200) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"receiverId": user_id}
        if unread_only:
            query["isRead"] = False
        start_time = self.db_manager.log_query_start(NOTIFICATIONS_COLLECTION, "find", query)
        cursor = self._collection(NOTIFICATIONS_COLLECTION).find(query, {"_id": 0}).sort("timestamp", DESCENDING)
        items = await cursor.to_list(length=limit)
        self.db_manager.log_query_success(NOTIFICATIONS_COLLECTION, "find", start_time, len(items))
        return items

    async def get_for_receiver(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        """Only the receiver can see a notification; anyone else gets a not-found."""
        notification = await self._collection(NOTIFICATIONS_COLLECTION).find_one(
            {"id": notification_id, "receiverId": user_id}, {"_id": 0}
        )
        if not notification:
            raise NotificationNotFound(notification_id)
        return notification

    async def update_notification(self, notification_id: str, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        update = {key: value for key, value in changes.items() if key in UPDATABLE_FIELDS and value is not None}
        if update:
            result = await self._collection(NOTIFICATIONS_COLLECTION).update_one(
                {"id": notification_id, "receiverId": user_id}, {"$set": update}
            )
            if result.matched_count == 0:
                raise NotificationNotFound(notification_id)
        return await self.get_for_receiver(notification_id, user_id)

    async def mark_read(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        """Mark as read. Marking an already-read notification is a no-op."""
        return await self.update_notification(notification_id, user_id, {"isRead": True})

    async def mark_all_read(self, user_id: str) -> int:
        result = await self._collection(NOTIFICATIONS_COLLECTION).update_many(
            {"receiverId": user_id, "isRead": False}, {"$set": {"isRead": True}}
        )
        return result.modified_count

    async def unread_count(self, user_id: str) -> int:
        return await self._collection(NOTIFICATIONS_COLLECTION).count_documents({"receiverId": user_id, "isRead": False})

    async def delete_notification(self, notification_id: str, user_id: str) -> None:
        result = await self._collection(NOTIFICATIONS_COLLECTION).delete_one(
            {"id": notification_id, "receiverId": user_id}
        )
        if result.deleted_count == 0:
            raise NotificationNotFound(notification_id)

    # --- Recipients ---

    async def tokens_for_user(self, user_id: str) -> List[str]:
        """Active device tokens of a user plus the legacy single token on the user record."""
        devices = await self._collection(DEVICES_COLLECTION).find(
            {"userId": user_id, "isActive": True}, {"fcmToken": 1}
        ).to_list(length=None)
        tokens = [device.get("fcmToken") for device in devices]
        user = await self._collection(USERS_COLLECTION).find_one({"id": user_id}, {"fcmToken": 1})
        if user:
            tokens.append(user.get("fcmToken"))
        return list(dict.fromkeys(t for t in tokens if not is_blank(t)))

    async def resolve_recipients(self, scope: Scope) -> List[str]:
        """Device tokens of everyone a scoped event should reach, deduplicated."""
        if isinstance(scope, PersonalScope):
            return await self.tokens_for_user(scope.user_id)
        if isinstance(scope, FamilyScope):
            family = await self._collection(FAMILIES_COLLECTION).find_one(
                {"familyId": scope.family_id}, {"membersIds": 1}
            )
            if not family:
                return []
            tokens: List[str] = []
            for member_id in family.get("membersIds", []):
                tokens.extend(await self.tokens_for_user(member_id))
            return list(dict.fromkeys(tokens))
        raise TypeError(f"Unsupported scope: {scope!r}")

    async def remove_invalid_tokens(self, tokens: List[str]) -> None:
        if not tokens:
            return
        await self._collection(DEVICES_COLLECTION).delete_many({"fcmToken": {"$in": tokens}})
        await self._collection(USERS_COLLECTION).update_many(
            {"fcmToken": {"$in": tokens}}, {"$set": {"fcmToken": None}}
        )
        self.logger.info("Removed %d invalid device token(s)", len(tokens))

    async def push_to_tokens(self, tokens: List[str], message: PushMessage) -> PushResult:
        """Push and drop tokens FCM reports as stale. Never raises."""
        result = await self.push.send_to_tokens(tokens, message)
        if result.invalid_tokens:
            try:
                await self.remove_invalid_tokens(result.invalid_tokens)
            except PyMongoError as e:
                self.logger.warning("Failed to remove invalid tokens: %s", e)
        return result

    # --- Workflow helpers ---

    async def notify_user(
        self,
        receiver: Dict[str, Any],
        sender: Optional[Dict[str, Any]],
        notification_type: NotificationType,
        title: str,
        message: str,
        family: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        actionable: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Persist one inbox notification for ``receiver`` and push it to their devices.

        Returns the saved notification, or None when saving failed.
        """
        saved: Optional[Dict[str, Any]] = None
        family = family or {}
        try:
            saved = await self.create_notification(
                build_notification(
                    title=title,
                    message=message,
                    receiver_id=receiver["id"],
                    notification_type=notification_type,
                    sender_id=(sender or {}).get("id"),
                    sender_name=display_name(sender),
                    family_id=family.get("familyId"),
                    family_alias=family.get("aliasName"),
                    actionable=actionable,
                )
            )
        except PyMongoError as e:
            self.logger.warning("Failed saving %s notification: %s", notification_type.value, e)

        push_data = {key: value for key, value in (data or {}).items() if value is not None}
        if saved:
            push_data["notificationId"] = saved["id"]
        try:
            tokens = await self.tokens_for_user(receiver["id"])
            if tokens:
                await self.push_to_tokens(
                    tokens,
                    PushMessage(
                        title=title,
                        body=message,
                        notification_type=notification_type,
                        data=push_data,
                        tag=push_data.get("familyId") or push_data.get("familyAlias"),
                    ),
                )
        except PyMongoError as e:
            self.logger.warning("Failed pushing %s notification: %s", notification_type.value, e)
        return saved

    async def notify_expense_event(
        self,
        notification_type: NotificationType,
        title: str,
        body: str,
        expense: Dict[str, Any],
        actor: Dict[str, Any],
    ) -> None:
        """
        Push an expense event to the owner (personal) or the whole family, and for family
        expenses store an inbox row for every member. Never raises.
        """
        family_id = expense.get("familyId")
        scope: Scope = PersonalScope(actor["id"]) if is_blank(family_id) else FamilyScope(family_id)
        currency = actor.get("currencyPreference") or ""
        try:
            tokens = await self.resolve_recipients(scope)
            if tokens:
                await self.push_to_tokens(
                    tokens,
                    PushMessage(
                        title=title,
                        body=body,
                        notification_type=notification_type,
                        data={
                            "description": expense.get("description") or "",
                            "amount": f"{currency}{expense.get('amount')}",
                            "senderId": actor.get("id") or "unknown",
                            "expenseId": expense.get("expenseId"),
                        },
                        tag=expense.get("expenseId"),
                    ),
                )
            if isinstance(scope, FamilyScope):
                await self._save_family_expense_notifications(notification_type, title, body, scope, actor)
        except PyMongoError as e:
            self.logger.warning("Expense notification failed for %s: %s", expense.get("expenseId"), e)

    async def _save_family_expense_notifications(
        self, notification_type: NotificationType, title: str, body: str, scope: FamilyScope, actor: Dict[str, Any]
    ) -> None:
        family = await self._collection(FAMILIES_COLLECTION).find_one({"familyId": scope.family_id})
        if not family:
            return
        for member_id in family.get("membersIds", []):
            try:
                await self.create_notification(
                    build_notification(
                        title=title,
                        message=body,
                        receiver_id=member_id,
                        notification_type=notification_type,
                        sender_id=actor.get("id"),
                        sender_name=actor.get("name"),
                        family_id=scope.family_id,
                        family_alias=family.get("aliasName"),
                    )
                )
            except PyMongoError as e:
                self.logger.warning("Failed saving family expense notification for %s: %s", member_id, e)


notification_manager = NotificationManager()
