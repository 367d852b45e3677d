"""
FastAPI dependencies for bearer-token authentication.

Failures from the token layer are normalised for clients: a 401 stays a 401, a 403 (for
example a deactivated account holding a still-valid token) becomes a 400 asking the client
to sign in again.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.routes.auth.services.login import get_current_user
from expense_tracker.utils.logging_utils import log_security_event, user_id_context

logger = get_logger(prefix="[Auth Dependencies]")

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_dep(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """Resolve the Authorization header to the current user document."""
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "UNAUTHORIZED", "message": "Authentication required. Please provide a valid JWT token."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        user = await get_current_user(credentials.credentials)
    except HTTPException as exc:
        if exc.status_code == status.HTTP_403_FORBIDDEN:
            log_security_event(
                "stale_session", ip_address=request.client.host if request.client else None, success=False
            )
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "REAUTHENTICATION_REQUIRED", "message": "Please re-authenticate."},
            ) from exc
        raise
    request.state.user_id = user["id"]
    user_id_context.set(user["id"])
    return user


async def get_bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "UNAUTHORIZED", "message": "Authentication required. Please provide a valid JWT token."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials
