"""
Tests for access tokens, refresh token rotation and the Firebase login exchange.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from fastapi import HTTPException
import pytest

from expense_tracker.config import settings
from expense_tracker.managers.user_manager import UserManager
from expense_tracker.routes.auth.services import login, tokens
from expense_tracker.routes.auth.services.firebase import verify_firebase_token


@pytest.fixture
def auth_db(fake_db):
    with patch.object(tokens, "db_manager", fake_db), patch.object(login, "user_manager", UserManager(db_manager=fake_db)):
        yield fake_db


class TestAccessTokens:
    def test_round_trip(self):
        token, expires_in = tokens.create_access_token("user-1")
        payload = tokens.decode_access_token(token)
        assert payload["sub"] == "user-1"
        assert payload["type"] == "access"
        assert expires_in == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        assert 0 < tokens.remaining_lifetime(payload) <= expires_in

    def test_expired_token(self):
        token, _ = tokens.create_access_token("user-1", expires_delta=timedelta(seconds=-10))
        with pytest.raises(HTTPException) as exc_info:
            tokens.decode_access_token(token)
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error"] == "TOKEN_EXPIRED"

    def test_garbage_token(self):
        with pytest.raises(HTTPException) as exc_info:
            tokens.decode_access_token("not-a-jwt")
        assert exc_info.value.detail["error"] == "INVALID_TOKEN"


class TestRefreshTokens:
    @pytest.mark.asyncio
    async def test_token_is_single_use(self, auth_db):
        refresh_token = await tokens.create_refresh_token("user-1")

        assert await tokens.consume_refresh_token(refresh_token) == "user-1"
        with pytest.raises(HTTPException) as exc_info:
            await tokens.consume_refresh_token(refresh_token)
        assert exc_info.value.detail["error"] == "INVALID_REFRESH_TOKEN"

    @pytest.mark.asyncio
    async def test_expired_refresh_token(self, auth_db):
        await auth_db.get_collection("refresh_tokens").insert_one(
            {
                "token": "old",
                "userId": "user-1",
                "revoked": False,
                "expiresAt": datetime.now(timezone.utc) - timedelta(minutes=1),
            }
        )
        with pytest.raises(HTTPException) as exc_info:
            await tokens.consume_refresh_token("old")
        assert exc_info.value.detail["error"] == "REFRESH_TOKEN_EXPIRED"

    @pytest.mark.asyncio
    async def test_revoke_user_tokens(self, auth_db):
        await tokens.create_refresh_token("user-1")
        await tokens.create_refresh_token("user-1")
        await tokens.create_refresh_token("user-2")
        assert await tokens.revoke_user_refresh_tokens("user-1") == 2

    @pytest.mark.asyncio
    async def test_rotation_issues_new_pair(self, auth_db, user_factory):
        await user_factory("alice")
        first = await login.issue_tokens({"id": "alice"})

        second = await login.refresh_tokens(first["refreshToken"])

        assert second["refreshToken"] != first["refreshToken"]
        assert second["user"]["id"] == "alice"
        assert tokens.decode_access_token(second["accessToken"])["sub"] == "alice"

    @pytest.mark.asyncio
    async def test_rotation_rejects_deactivated_user(self, auth_db, user_factory):
        await user_factory("alice", isActive=False)
        refresh_token = await tokens.create_refresh_token("alice")
        with pytest.raises(HTTPException) as exc_info:
            await login.refresh_tokens(refresh_token)
        assert exc_info.value.status_code == 403


class TestLogin:
    @pytest.mark.asyncio
    async def test_first_login_creates_user(self, auth_db):
        claims = {"sub": "firebase-uid", "email": "New@Example.com", "name": "New Person"}
        with patch.object(login, "verify_firebase_token", AsyncMock(return_value=claims)):
            result = await login.login_with_firebase("id-token")

        assert result["tokenType"] == "Bearer"
        assert result["user"]["email"] == "new@example.com"
        assert result["user"]["name"] == "New Person"
        assert len(auth_db.get_collection("refresh_tokens").documents) == 1

    @pytest.mark.asyncio
    async def test_missing_email(self, auth_db):
        with patch.object(login, "verify_firebase_token", AsyncMock(return_value={"sub": "uid"})):
            with pytest.raises(HTTPException) as exc_info:
                await login.login_with_firebase("id-token")
        assert exc_info.value.detail["error"] == "EMAIL_REQUIRED"

    @pytest.mark.asyncio
    async def test_deactivated_account(self, auth_db, user_factory):
        await user_factory("alice", isActive=False)
        claims = {"sub": "uid", "email": "alice@example.com"}
        with patch.object(login, "verify_firebase_token", AsyncMock(return_value=claims)):
            with pytest.raises(HTTPException) as exc_info:
                await login.login_with_firebase("id-token")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_firebase_not_configured(self):
        with patch.object(settings, "FIREBASE_PROJECT_ID", ""):
            with pytest.raises(HTTPException) as exc_info:
                await verify_firebase_token("id-token")
        assert exc_info.value.status_code == 503


class TestCurrentUser:
    @pytest.mark.asyncio
    async def test_blacklisted_token(self, auth_db):
        token, _ = tokens.create_access_token("alice")
        with patch.object(login, "is_token_blacklisted", AsyncMock(return_value=True)):
            with pytest.raises(HTTPException) as exc_info:
                await login.get_current_user(token)
        assert exc_info.value.detail["error"] == "TOKEN_REVOKED"

    @pytest.mark.asyncio
    async def test_user_gone(self, auth_db):
        token, _ = tokens.create_access_token("ghost")
        with patch.object(login, "is_token_blacklisted", AsyncMock(return_value=False)):
            with pytest.raises(HTTPException) as exc_info:
                await login.get_current_user(token)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_deactivated_user_is_forbidden(self, auth_db, user_factory):
        await user_factory("alice", isActive=False)
        token, _ = tokens.create_access_token("alice")
        with patch.object(login, "is_token_blacklisted", AsyncMock(return_value=False)):
            with pytest.raises(HTTPException) as exc_info:
                await login.get_current_user(token)
        assert exc_info.value.status_code == 403
