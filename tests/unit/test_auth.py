"""
Unit tests for the auth dependency (get_current_user).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import structlog
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from botanicmd.auth import get_current_user
from botanicmd.models.auth import AuthUser


def _make_request(supabase_client=None):
    """Create a mock FastAPI Request with app.state.supabase set."""
    request = MagicMock()
    request.app.state.supabase = supabase_client
    return request


def _make_credentials(token: str = "valid-token") -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _make_supabase(user=None, error: Exception | None = None) -> MagicMock:
    mock_response = MagicMock()
    mock_response.user = user

    mock_supabase = MagicMock()
    mock_supabase.auth.get_user = AsyncMock(return_value=mock_response, side_effect=error)
    return mock_supabase


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    async def test_valid_token_returns_user(self):
        """A valid token returns an AuthUser."""
        mock_user = MagicMock()
        mock_user.id = "user-123"
        mock_user.email = "test@example.com"
        mock_user.user_metadata = {"full_name": "Test User"}
        mock_supabase = _make_supabase(mock_user)

        result = await get_current_user(_make_request(mock_supabase), _make_credentials("valid-token"))

        assert isinstance(result, AuthUser)
        assert result.id == "user-123"
        assert result.email == "test@example.com"
        assert result.name == "Test User"
        mock_supabase.auth.get_user.assert_awaited_once_with("valid-token")

    async def test_binds_user_id_to_log_context(self):
        mock_user = MagicMock()
        mock_user.id = "user-123"
        mock_user.email = None
        mock_user.user_metadata = {}
        structlog.contextvars.clear_contextvars()

        await get_current_user(_make_request(_make_supabase(mock_user)), _make_credentials())

        assert structlog.contextvars.get_contextvars()["user_id"] == "user-123"
        structlog.contextvars.clear_contextvars()

    async def test_invalid_token_raises_401(self):
        """A token that returns no user raises 401."""
        request = _make_request(_make_supabase(None))

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("bad-token"))

        assert exc_info.value.status_code == 401

    async def test_expired_token_raises_401(self):
        """A token that causes an exception raises 401."""
        request = _make_request(_make_supabase(error=Exception("Token expired")))

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("expired-token"))

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid or expired token"

    async def test_no_supabase_client_raises_503(self):
        """When Supabase client is None, raises 503."""
        request = _make_request(supabase_client=None)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(request, _make_credentials("any-token"))

        assert exc_info.value.status_code == 503
