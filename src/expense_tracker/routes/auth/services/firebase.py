"""
Firebase ID token verification.

Tokens are RS256 JWTs signed with one of Google's rotating certificates. The certificates are
fetched from the securetoken endpoint and cached for as long as its Cache-Control header allows.
"""

import asyncio
import re
import time
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
import httpx
from jose import ExpiredSignatureError, JWTError, jwt

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger

logger = get_logger(prefix="[Firebase Auth]")

GOOGLE_CERTS_URL = "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
ISSUER_PREFIX = "https://securetoken.google.com/"
DEFAULT_CERT_CACHE_SECONDS = 3600

_certs: Dict[str, str] = {}
_certs_expiry: float = 0.0
_certs_lock = asyncio.Lock()


def _invalid(message: str = "Invalid Firebase token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "INVALID_FIREBASE_TOKEN", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _max_age(cache_control: Optional[str]) -> int:
    match = re.search(r"max-age=(\d+)", cache_control or "")
    return int(match.group(1)) if match else DEFAULT_CERT_CACHE_SECONDS


async def fetch_google_certs(client: Optional[httpx.AsyncClient] = None) -> Dict[str, str]:
    """Return the kid -> PEM certificate map, refreshing the cache when stale."""
    global _certs_expiry
    async with _certs_lock:
        if _certs and time.time() < _certs_expiry:
            return _certs
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.get(GOOGLE_CERTS_URL)
            response.raise_for_status()
            certs = response.json()
        finally:
            if owns_client:
                await client.aclose()
        _certs.clear()
        _certs.update(certs)
        _certs_expiry = time.time() + _max_age(response.headers.get("cache-control"))
        logger.info("Fetched %d Firebase signing certificates", len(certs))
        return _certs


async def verify_firebase_token(id_token: str) -> Dict[str, Any]:
    """
    Verify a Firebase ID token and return its claims.

    Raises:
        HTTPException: 503 when Firebase auth is not configured, 401 when the token is invalid.
    """
    project_id = settings.FIREBASE_PROJECT_ID
    if not project_id:
        logger.error("Firebase login attempted but FIREBASE_PROJECT_ID is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "AUTH_NOT_CONFIGURED", "message": "Firebase authentication is not configured"},
        )

    try:
        header = jwt.get_unverified_header(id_token)
    except JWTError as exc:
        raise _invalid() from exc
    if header.get("alg") != "RS256" or not header.get("kid"):
        raise _invalid()

    try:
        certs = await fetch_google_certs()
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Failed to fetch Firebase certificates: %s", exc, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "AUTH_UNAVAILABLE", "message": "Unable to verify Firebase token right now"},
        ) from exc

    certificate = certs.get(header["kid"])
    if certificate is None:
        raise _invalid()

    try:
        claims = jwt.decode(
            id_token,
            certificate,
            algorithms=["RS256"],
            audience=project_id,
            issuer=f"{ISSUER_PREFIX}{project_id}",
            options={"verify_at_hash": False},
        )
    except ExpiredSignatureError as exc:
        raise _invalid("Firebase token has expired") from exc
    except JWTError as exc:
        logger.warning("Firebase token rejected: %s", exc)
        raise _invalid() from exc

    if not claims.get("sub"):
        raise _invalid()
    return claims
