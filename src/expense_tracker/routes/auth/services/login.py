"""Login, token refresh and bearer-token resolution."""

from typing import Any, Dict

from fastapi import HTTPException, status

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.user_manager import user_manager
from expense_tracker.models import is_blank
from expense_tracker.routes.auth.services.firebase import verify_firebase_token
from expense_tracker.routes.auth.services.tokens import (
    consume_refresh_token,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    is_token_blacklisted,
)
from expense_tracker.utils.logging_utils import log_security_event

logger = get_logger(prefix="[Auth Service Login]")


def _deactivated() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"error": "ACCOUNT_DEACTIVATED", "message": "Account is deactivated"},
    )


async def issue_tokens(user: Dict[str, Any]) -> Dict[str, Any]:
    access_token, expires_in = create_access_token(user["id"])
    refresh_token = await create_refresh_token(user["id"])
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "tokenType": "Bearer",
        "expiresIn": expires_in,
        "user": user,
    }


async def login_with_firebase(id_token: str, ip_address: str = "unknown") -> Dict[str, Any]:
    """
    Exchange a Firebase ID token for an app token pair, creating the user on first login.

    Raises:
        HTTPException: 400 when the token carries no email, 401 for invalid tokens,
            403 for deactivated accounts.
    """
    claims = await verify_firebase_token(id_token)
    email = claims.get("email")
    if is_blank(email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "EMAIL_REQUIRED", "message": "Email not found in Firebase token"},
        )

    user = await user_manager.find_or_create_from_identity(
        email, firebase_uid=claims.get("sub"), name=claims.get("name"), picture=claims.get("picture")
    )
    if not user.get("isActive", True):
        log_security_event("login_rejected_deactivated", user_id=user["id"], ip_address=ip_address, success=False)
        raise _deactivated()

    log_security_event("login", user_id=user["id"], ip_address=ip_address, success=True)
    return await issue_tokens(user)


async def refresh_tokens(refresh_token: str) -> Dict[str, Any]:
    """Rotate a refresh token into a new token pair."""
    user_id = await consume_refresh_token(refresh_token)
    user = await user_manager.get_user(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "INVALID_REFRESH_TOKEN", "message": "Invalid refresh token", "action": "login"},
        )
    if not user.get("isActive", True):
        raise _deactivated()
    logger.info("Rotated refresh token for user %s", user_id)
    return await issue_tokens(user)


async def resolve_token(token: str) -> Dict[str, Any]:
    """Decode a bearer token after checking the blacklist. Raises 401 on failure."""
    if await is_token_blacklisted(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "TOKEN_REVOKED", "message": "Token has been revoked", "action": "login"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_access_token(token)


async def get_current_user(token: str) -> Dict[str, Any]:
    """
    Resolve a bearer token to its user.

    Raises:
        HTTPException: 401 for bad tokens, 400 when the user record is gone,
            403 when the account is deactivated.
    """
    payload = await resolve_token(token)
    user = await user_manager.get_user(payload["sub"])
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "USER_NOT_FOUND", "message": "ExpenseUser not found"},
        )
    if not user.get("isActive", True):
        raise _deactivated()
    return user
