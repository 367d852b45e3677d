"""
User profiles and push devices.

Users are created on first successful login and never hard-deleted. A user may register any
number of devices; each FCM token belongs to exactly one user at a time, so registering a
token that another account used moves it to the current user.
"""

from typing import Any, Dict, List, Optional
import uuid

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from expense_tracker.config import settings
from expense_tracker.database import db_manager as default_db_manager
from expense_tracker.managers import currency_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models import is_blank, now_millis
from expense_tracker.utils.alias import generate_unique_alias
from expense_tracker.utils.error_handling import NotFoundError, ValidationError

logger = get_logger(prefix="[UserManager]")

USERS_COLLECTION = "users"
DEVICES_COLLECTION = "user_devices"

PROFILE_FIELDS = ("name", "profilePic", "profilePicLow", "currencyPreference")
USER_PROJECTION = {"_id": 0}


class UserNotFound(NotFoundError):
    def __init__(self, user_id: Optional[str] = None, message: str = "User not found"):
        super().__init__(message, error_code="USER_NOT_FOUND", context={"user_id": user_id})


class UserManager:
    def __init__(self, db_manager=None):
        self.db_manager = db_manager or default_db_manager
        self.logger = logger

    def _users(self):
        return self.db_manager.get_collection(USERS_COLLECTION)

    def _devices(self):
        return self.db_manager.get_collection(DEVICES_COLLECTION)

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self._users().find_one({"id": user_id}, USER_PROJECTION)

    async def require_user(self, user_id: str) -> Dict[str, Any]:
        user = await self.get_user(user_id)
        if not user:
            raise UserNotFound(user_id)
        return user

    async def get_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return await self._users().find_one({"email": email.strip().lower()}, USER_PROJECTION)

    async def find_or_create_from_identity(
        self, email: str, firebase_uid: Optional[str] = None, name: Optional[str] = None, picture: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Look the user up by email, creating them on first login.

        New users get a uuid id, a display name defaulting to the email local part,
        a unique alias and the default currency.
        """
        if is_blank(email):
            raise ValidationError("Email is required", errors=["Email is required"])
        email = email.strip().lower()
        now = now_millis()

        existing = await self.get_by_email(email)
        if existing:
            if firebase_uid and existing.get("firebaseUid") != firebase_uid:
                await self._users().update_one(
                    {"id": existing["id"]}, {"$set": {"firebaseUid": firebase_uid, "updatedAt": now}}
                )
                existing["firebaseUid"] = firebase_uid
            return existing

        user = {
            "id": str(uuid.uuid4()),
            "firebaseUid": firebase_uid,
            "name": name or email.split("@")[0],
            "email": email,
            "aliasName": await generate_unique_alias(self._users()),
            "familyId": None,
            "currencyPreference": settings.DEFAULT_CURRENCY,
            "profilePic": picture,
            "profilePicLow": None,
            "fcmToken": None,
            "onboardingCompleted": False,
            "isActive": True,
            "createdAt": now,
            "updatedAt": now,
        }
        start_time = self.db_manager.log_query_start(USERS_COLLECTION, "insert_one")
        try:
            await self._users().insert_one(user)
        except DuplicateKeyError:
            # Concurrent first login with the same email
            self.db_manager.log_query_success(USERS_COLLECTION, "insert_one", start_time, 0, "duplicate email")
            return await self.get_by_email(email)
        self.db_manager.log_query_success(USERS_COLLECTION, "insert_one", start_time, 1)
        user.pop("_id", None)
        self.logger.info("Created user %s", user["id"])
        return user

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        update = {key: changes[key] for key in PROFILE_FIELDS if changes.get(key) is not None}
        currency = update.get("currencyPreference")
        if currency is not None and not (
            currency_manager.is_symbol_supported(currency) or currency_manager.find_currency(currency)
        ):
            raise ValidationError("Unsupported currency", errors=[f"Unsupported currency: {currency}"])
        if "name" in update and is_blank(update["name"]):
            raise ValidationError("Name cannot be blank")
        update["updatedAt"] = now_millis()
        user = await self._users().find_one_and_update(
            {"id": user_id}, {"$set": update}, projection=USER_PROJECTION, return_document=ReturnDocument.AFTER
        )
        if not user:
            raise UserNotFound(user_id)
        return user

    async def set_onboarding_completed(self, user_id: str, completed: bool = True) -> Dict[str, Any]:
        user = await self._users().find_one_and_update(
            {"id": user_id},
            {"$set": {"onboardingCompleted": completed, "updatedAt": now_millis()}},
            projection=USER_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if not user:
            raise UserNotFound(user_id)
        return user

    # --- Devices ---

    async def register_device(
        self, user_id: str, fcm_token: str, device_name: Optional[str] = None, device_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Upsert a device by token and mirror it into the legacy single-token field."""
        if is_blank(fcm_token):
            raise ValidationError("FCM token is required", errors=["FCM token is required"])
        now = now_millis()
        device = await self._devices().find_one_and_update(
            {"fcmToken": fcm_token},
            {
                "$set": {
                    "userId": user_id,
                    "deviceName": device_name,
                    "deviceType": device_type,
                    "isActive": True,
                    "updatedAt": now,
                },
                "$setOnInsert": {"id": str(uuid.uuid4()), "fcmToken": fcm_token, "createdAt": now},
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        # The token may have been the legacy token of another account
        await self._users().update_many(
            {"fcmToken": fcm_token, "id": {"$ne": user_id}}, {"$set": {"fcmToken": None}}
        )
        result = await self._users().update_one({"id": user_id}, {"$set": {"fcmToken": fcm_token, "updatedAt": now}})
        if result.matched_count == 0:
            raise UserNotFound(user_id)
        self.logger.info("Registered device for user %s (%s)", user_id, device_type or "unknown")
        return device

    async def list_active_devices(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self._devices().find({"userId": user_id, "isActive": True}, {"_id": 0}).sort("updatedAt", DESCENDING)
        return await cursor.to_list(length=None)

    async def remove_device(self, user_id: str, fcm_token: str) -> bool:
        result = await self._devices().update_one(
            {"userId": user_id, "fcmToken": fcm_token}, {"$set": {"isActive": False, "updatedAt": now_millis()}}
        )
        await self._users().update_one({"id": user_id, "fcmToken": fcm_token}, {"$set": {"fcmToken": None}})
        return result.matched_count > 0

    async def logout_all_devices(self, user_id: str) -> int:
        result = await self._devices().update_many(
            {"userId": user_id, "isActive": True}, {"$set": {"isActive": False, "updatedAt": now_millis()}}
        )
        await self._users().update_one({"id": user_id}, {"$set": {"fcmToken": None}})
        return result.modified_count


user_manager = UserManager()
