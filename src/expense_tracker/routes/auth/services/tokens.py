"""
App-issued tokens.

Access tokens are short-lived HS256 JWTs carrying ``sub`` (the user id) and ``type: "access"``.
Refresh tokens are opaque random strings stored in the ``refresh_tokens`` collection; each use
revokes the presented token and issues a new pair. Logged-out access tokens are blacklisted in
Redis until they would have expired anyway.
"""

from datetime import datetime, timedelta, timezone
import secrets
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt
from redis.exceptions import RedisError

from expense_tracker.config import settings
from expense_tracker.database import db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.redis_manager import redis_manager

logger = get_logger(prefix="[Auth Tokens]")

REFRESH_TOKENS_COLLECTION = "refresh_tokens"
BLACKLIST_TOKEN_EXPIRY: int = 60 * 60 * 24  # 1 day fallback


def _secret() -> str:
    return settings.SECRET_KEY.get_secret_value()


def _unauthorized(message: str, error: str = "INVALID_TOKEN") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message, "action": "login"},
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> Tuple[str, int]:
    """
    Create a signed access token for the user.

    Returns:
        The encoded JWT and its lifetime in seconds.
    """
    expires_delta = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    now = datetime.now(timezone.utc)
    to_encode = {"sub": user_id, "iat": now, "exp": now + expires_delta, "type": "access"}
    encoded_jwt = jwt.encode(to_encode, _secret(), algorithm=settings.ALGORITHM)
    logger.debug("Access token created for user %s", user_id)
    return encoded_jwt, int(expires_delta.total_seconds())


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and check an access token.

    Raises:
        HTTPException: 401 if the token is expired, malformed or not an access token.
    """
    try:
        payload = jwt.decode(token, _secret(), algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError as exc:
        raise _unauthorized("Token has expired. Please log in again.", "TOKEN_EXPIRED") from exc
    except JWTError as exc:
        logger.warning("Access token decode failed: %s", exc)
        raise _unauthorized("Could not validate credentials") from exc
    if payload.get("type") != "access" or not payload.get("sub"):
        raise _unauthorized("Could not validate credentials")
    return payload


def remaining_lifetime(payload: Dict[str, Any]) -> int:
    exp = payload.get("exp")
    if exp is None:
        return 0
    return max(0, int(exp - datetime.now(timezone.utc).timestamp()))


async def blacklist_token(token: str, expires_in: Optional[int] = None) -> None:
    """Blacklist one access token. Redis failures are logged, not raised."""
    try:
        redis_conn = await redis_manager.get_redis()
        await redis_conn.set(f"blacklist:token:{token}", "1", ex=max(1, expires_in or BLACKLIST_TOKEN_EXPIRY))
        logger.info("Blacklisted access token")
    except (RedisError, HTTPException) as exc:
        logger.error("Failed to blacklist token: %s", exc, exc_info=True)


async def is_token_blacklisted(token: str) -> bool:
    try:
        redis_conn = await redis_manager.get_redis()
        return bool(await redis_conn.get(f"blacklist:token:{token}"))
    except (RedisError, HTTPException) as exc:
        logger.error("Failed to check token blacklist: %s", exc, exc_info=True)
        return False


async def create_refresh_token(user_id: str) -> str:
    token = secrets.token_urlsafe(48)
    now = datetime.now(timezone.utc)
    document = {
        "token": token,
        "userId": user_id,
        "revoked": False,
        "createdAt": now,
        "expiresAt": now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    }
    start_time = db_manager.log_query_start(REFRESH_TOKENS_COLLECTION, "insert_one")
    await db_manager.get_collection(REFRESH_TOKENS_COLLECTION).insert_one(document)
    db_manager.log_query_success(REFRESH_TOKENS_COLLECTION, "insert_one", start_time, 1)
    return token


async def consume_refresh_token(token: str) -> str:
    """
    Revoke a refresh token and return its owner.

    The revoke is a conditional update, so a token can only be consumed once.

    Raises:
        HTTPException: 401 for unknown, revoked or expired tokens.
    """
    now = datetime.now(timezone.utc)
    collection = db_manager.get_collection(REFRESH_TOKENS_COLLECTION)
    document = await collection.find_one_and_update(
        {"token": token, "revoked": False},
        {"$set": {"revoked": True, "revokedAt": now}},
    )
    if not document:
        logger.warning("Refresh attempted with unknown or revoked token")
        raise _unauthorized("Invalid refresh token", "INVALID_REFRESH_TOKEN")
    expires_at = document.get("expiresAt")
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at is not None and expires_at <= now:
        raise _unauthorized("Refresh token has expired. Please log in again.", "REFRESH_TOKEN_EXPIRED")
    return document["userId"]


async def revoke_user_refresh_tokens(user_id: str) -> int:
    start_time = db_manager.log_query_start(REFRESH_TOKENS_COLLECTION, "update_many", {"userId": user_id})
    result = await db_manager.get_collection(REFRESH_TOKENS_COLLECTION).update_many(
        {"userId": user_id, "revoked": False},
        {"$set": {"revoked": True, "revokedAt": datetime.now(timezone.utc)}},
    )
    db_manager.log_query_success(REFRESH_TOKENS_COLLECTION, "update_many", start_time, result.modified_count)
    return result.modified_count
