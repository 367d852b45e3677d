"""
Push delivery through the Firebase Cloud Messaging HTTP v1 API.

The manager only knows how to deliver a message to a list of device tokens. Working out who
should receive a message lives in the notification manager (resolve_recipients).

Delivery is best-effort: every failure is logged and reported through PushResult, nothing is
raised to the caller. Tokens FCM reports as UNREGISTERED or INVALID_ARGUMENT are returned in
``invalid_tokens`` so callers can drop them.

Authentication uses a service-account JWT assertion (RS256) exchanged for an OAuth access
token at Google's token endpoint. The access token is cached until shortly before it expires.
"""

import asyncio
from dataclasses import dataclass, field
import re
import time
from typing import Any, Dict, List, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models import NotificationType

logger = get_logger(prefix="[PushManager]")

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

EXPENSE_CHANNEL_ID = "expense_notifications"
FAMILY_CHANNEL_ID = "family_notifications"
REMINDER_CHANNEL_ID = "reminder_notifications"
GENERAL_CHANNEL_ID = "general_notifications"

# Android TTL per channel, seconds
CHANNEL_TTL_SECONDS: Dict[str, int] = {
    EXPENSE_CHANNEL_ID: 2 * 60 * 60,
    FAMILY_CHANNEL_ID: 6 * 60 * 60,
    REMINDER_CHANNEL_ID: 24 * 60 * 60,
    GENERAL_CHANNEL_ID: 12 * 60 * 60,
}

INVALID_TOKEN_ERRORS = {"UNREGISTERED", "INVALID_ARGUMENT"}
COLLAPSE_KEY_MAX_LENGTH = 64

_EXPENSE_TYPES = {
    NotificationType.EXPENSE_ADDED,
    NotificationType.EXPENSE_UPDATED,
    NotificationType.EXPENSE_DELETED,
}
_REMINDER_TYPES = {
    NotificationType.BUDGET_LIMIT_REACHED,
    NotificationType.PAYMENT_REMINDER,
    NotificationType.REMINDER,
}


def channel_for_type(notification_type: NotificationType) -> str:
    """Android notification channel for a notification type."""
    if notification_type in _EXPENSE_TYPES:
        return EXPENSE_CHANNEL_ID
    if notification_type in _REMINDER_TYPES:
        return REMINDER_CHANNEL_ID
    if notification_type.name.startswith(("FAMILY_", "JOIN_FAMILY_")):
        return FAMILY_CHANNEL_ID
    return GENERAL_CHANNEL_ID


def ttl_for_channel(channel_id: str) -> int:
    return CHANNEL_TTL_SECONDS.get(channel_id, CHANNEL_TTL_SECONDS[GENERAL_CHANNEL_ID])


def compute_collapse_key(
    notification_type: Optional[NotificationType],
    tag: Optional[str],
    data: Optional[Dict[str, Any]],
    channel_id: str,
) -> str:
    """
    Pick the collapse key so that newer pushes about the same thing replace older ones.

    Precedence: explicit tag, expense id, family id plus type for family events,
    family id, type name, channel. The result is lowercased, reduced to [a-z0-9_]
    and capped at 64 characters.
    """
    data = data or {}
    expense_id = str(data.get("expenseId") or "").strip()
    family_id = str(data.get("familyId") or "").strip()

    if tag and tag.strip():
        base = tag
    elif expense_id:
        base = f"exp_{expense_id}"
    elif notification_type is not None and notification_type.name.startswith("FAMILY") and family_id:
        base = f"fam_{family_id}_{notification_type.name.lower()}"
    elif family_id:
        base = f"fam_{family_id}"
    elif notification_type is not None:
        base = notification_type.name.lower()
    else:
        base = channel_id
    return re.sub(r"[^a-z0-9_]+", "_", base.lower())[:COLLAPSE_KEY_MAX_LENGTH]


@dataclass
class PushMessage:
    title: str
    body: str
    notification_type: NotificationType = NotificationType.GENERAL
    data: Dict[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None


@dataclass
class PushResult:
    success_count: int = 0
    failure_count: int = 0
    invalid_tokens: List[str] = field(default_factory=list)


class PushManager:
    """Sends typed push notifications to device tokens over FCM HTTP v1."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._client = http_client
        self._access_token: Optional[str] = None
        self._access_token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()
        self.logger = logger

    @property
    def enabled(self) -> bool:
        return settings.fcm_configured

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.FCM_TIMEOUT_SECONDS)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_access_token(self) -> str:
        """Exchange a signed service-account assertion for an OAuth access token."""
        async with self._token_lock:
            if self._access_token and time.time() < self._access_token_expiry - 60:
                return self._access_token

            issued_at = int(time.time())
            private_key = settings.FIREBASE_PRIVATE_KEY.get_secret_value().replace("\\n", "\n")
            assertion = jwt.encode(
                {
                    "iss": settings.FIREBASE_CLIENT_EMAIL,
                    "scope": FCM_SCOPE,
                    "aud": GOOGLE_TOKEN_URL,
                    "iat": issued_at,
                    "exp": issued_at + 3600,
                },
                private_key,
                algorithm="RS256",
            )
            response = await self._get_client().post(
                GOOGLE_TOKEN_URL,
                data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
            )
            response.raise_for_status()
            payload = response.json()
            self._access_token = payload["access_token"]
            self._access_token_expiry = issued_at + int(payload.get("expires_in", 3600))
            return self._access_token

    def build_payload(self, token: str, message: PushMessage) -> Dict[str, Any]:
        """FCM v1 message body for a single token. Data values must be strings."""
        channel_id = channel_for_type(message.notification_type)
        collapse_key = compute_collapse_key(message.notification_type, message.tag, message.data, channel_id)

        data = {key: str(value) for key, value in message.data.items() if value is not None}
        data.update(
            {
                "type": message.notification_type.value,
                "channelId": channel_id,
                "title": message.title,
                "body": message.body,
            }
        )

        android_notification: Dict[str, Any] = {"channel_id": channel_id, "title": message.title, "body": message.body}
        if message.tag:
            android_notification["tag"] = message.tag

        return {
            "message": {
                "token": token,
                "data": data,
                "android": {
                    "priority": "HIGH",
                    "ttl": f"{ttl_for_channel(channel_id)}s",
                    "collapse_key": collapse_key,
                    "notification": android_notification,
                },
                "apns": {
                    "headers": {"apns-collapse-id": collapse_key, "apns-priority": "10"},
                    "payload": {"aps": {"alert": {"title": message.title, "body": message.body}, "sound": "default"}},
                },
            }
        }

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        """Extract the FCM error code from an error response body."""
        try:
            error = response.json().get("error", {})
        except ValueError:
            return None
        for detail in error.get("details", []) or []:
            if detail.get("errorCode"):
                return detail["errorCode"]
        return error.get("status")

    async def _send_one(self, token: str, message: PushMessage, access_token: str) -> Optional[str]:
        """Send to one token. Returns None on success, else the error code."""
        url = FCM_SEND_URL.format(project_id=settings.FIREBASE_PROJECT_ID)
        try:
            response = await self._get_client().post(
                url,
                json=self.build_payload(token, message),
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            self.logger.warning("FCM request failed: %s", e)
            return "TRANSPORT_ERROR"
        if response.status_code == 200:
            return None
        code = self._error_code(response) or f"HTTP_{response.status_code}"
        self.logger.warning("FCM error for token %s...: %s", token[:10], code)
        return code

    async def send_to_tokens(self, tokens: List[str], message: PushMessage) -> PushResult:
        """
        Deliver a message to every token.

        Blank and duplicate tokens are ignored. Never raises.
        """
        safe_tokens = list(dict.fromkeys(t for t in tokens if t and t.strip()))
        result = PushResult()
        if not safe_tokens:
            return result
        if not self.enabled:
            self.logger.debug(
                "FCM disabled, skipping %s push to %d device(s)", message.notification_type.value, len(safe_tokens)
            )
            result.failure_count = len(safe_tokens)
            return result

        try:
            access_token = await self._get_access_token()
        except (httpx.HTTPError, JOSEError, KeyError, ValueError) as e:
            self.logger.error("Could not obtain FCM access token: %s", e, exc_info=True)
            result.failure_count = len(safe_tokens)
            return result

        outcomes = await asyncio.gather(*(self._send_one(t, message, access_token) for t in safe_tokens))
        for token, error_code in zip(safe_tokens, outcomes):
            if error_code is None:
                result.success_count += 1
            else:
                result.failure_count += 1
                if error_code in INVALID_TOKEN_ERRORS:
                    result.invalid_tokens.append(token)

        self.logger.info(
            "Push %s: %d sent, %d failed, %d invalid",
            message.notification_type.value,
            result.success_count,
            result.failure_count,
            len(result.invalid_tokens),
        )
        return result


push_manager = PushManager()
