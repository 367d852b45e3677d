"""Authentication routes: Firebase login, token refresh, validation and logout."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import security_manager
from expense_tracker.routes.auth.dependencies import get_bearer_token, get_current_user_dep
from expense_tracker.routes.auth.models import (
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    TokenResponse,
    ValidateResponse,
)
from expense_tracker.routes.auth.services.login import login_with_firebase, refresh_tokens, resolve_token
from expense_tracker.routes.auth.services.tokens import (
    blacklist_token,
    remaining_lifetime,
    revoke_user_refresh_tokens,
)
from expense_tracker.utils.logging_utils import log_performance, log_security_event

logger = get_logger(prefix="[Auth Routes]")

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post("/login", response_model=TokenResponse)
@log_performance("auth_login")
async def login(request: Request, payload: LoginRequest) -> Dict[str, Any]:
    """Exchange a Firebase ID token for an access/refresh token pair."""
    await security_manager.check_rate_limit(request, "login", rate_limit_requests=20, rate_limit_period=60)
    ip_address = security_manager.get_client_ip(request)
    return await login_with_firebase(payload.firebaseIdToken, ip_address=ip_address)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(request: Request, payload: RefreshRequest) -> Dict[str, Any]:
    """Rotate the refresh token. The presented token cannot be used again."""
    await security_manager.check_rate_limit(request, "refresh", rate_limit_requests=30, rate_limit_period=60)
    tokens = await refresh_tokens(payload.refreshToken)
    log_security_event("token_refresh", user_id=tokens["user"]["id"], ip_address=security_manager.get_client_ip(request))
    return tokens


@router.post("/validate", response_model=ValidateResponse)
async def validate(token: str = Depends(get_bearer_token)) -> ValidateResponse:
    payload = await resolve_token(token)
    return ValidateResponse(valid=True, userId=payload["sub"], expiresIn=remaining_lifetime(payload))


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    token: str = Depends(get_bearer_token),
    current_user: dict = Depends(get_current_user_dep),
) -> MessageResponse:
    """Blacklist the bearer token until it expires and revoke every refresh token of the user."""
    payload = await resolve_token(token)
    await blacklist_token(token, remaining_lifetime(payload))
    revoked = await revoke_user_refresh_tokens(current_user["id"])
    log_security_event(
        "logout",
        user_id=current_user["id"],
        ip_address=security_manager.get_client_ip(request),
        details={"revoked_refresh_tokens": revoked},
    )
    return MessageResponse(message="Logged out successfully")


@router.get("/me")
async def me(current_user: dict = Depends(get_current_user_dep)) -> Dict[str, Any]:
    return current_user
