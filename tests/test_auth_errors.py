"""Tests for auth collaborators, the error taxonomy and Result values."""

import json

import pytest

from nexus.auth import StaticTokenAuth, TokenFileAuth
from nexus.errors import ErrorCode, ObjectNotFoundError, RemoteError, RemoteUnavailableError
from nexus.result import attempt


class TestTokenFileAuth:
    @pytest.mark.asyncio
    async def test_rereads_file(self, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("first\n")
        auth = TokenFileAuth(token_file)

        assert auth.get_access_token() == "first"
        token_file.write_text("second")
        assert await auth.request_new_token() == "second"

    def test_missing_file_is_offline(self, tmp_path):
        auth = TokenFileAuth(tmp_path / "absent")
        assert auth.get_access_token() is None
        assert auth.is_offline_mode()

    def test_forced_offline(self, tmp_path):
        token_file = tmp_path / "token"
        token_file.write_text("t")
        assert TokenFileAuth(token_file, offline=True).is_offline_mode()

    def test_static_token(self):
        assert not StaticTokenAuth("t").is_offline_mode()
        assert StaticTokenAuth(None).is_offline_mode()


class TestErrors:
    def test_json_shape(self):
        error = ObjectNotFoundError("Object not found: x", {"id": "x"})
        assert json.loads(error.to_json()) == {
            "error": {"code": "OBJECT_NOT_FOUND", "message": "Object not found: x", "details": {"id": "x"}}
        }

    def test_remote_error_keeps_status(self):
        error = RemoteError("forbidden", 403)
        assert error.status_code == 403
        assert error.to_dict()["details"] == {"status": 403}
        assert error.code == ErrorCode.REMOTE_ERROR


class TestAttempt:
    @pytest.mark.asyncio
    async def test_success(self):
        async def ok():
            return 5

        result = await attempt(ok())
        assert result.ok
        assert result.unwrap() == 5

    @pytest.mark.asyncio
    async def test_nexus_error_captured(self):
        async def fail():
            raise RemoteUnavailableError("down")

        result = await attempt(fail())
        assert not result.ok
        assert result.error.code == ErrorCode.REMOTE_UNAVAILABLE
        with pytest.raises(RemoteUnavailableError):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_bugs_propagate(self):
        async def broken():
            raise KeyError("oops")

        with pytest.raises(KeyError):
            await attempt(broken())
