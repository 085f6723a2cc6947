import pytest
from unittest.mock import AsyncMock, Mock, patch
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, status
from beanie import PydanticObjectId

from mongosnap.core.exceptions import TokenRotationError
from mongosnap.utils.auth import (
    MAX_DEVICE_CHANGES,
    _decode_access_token,
    create_access_token,
    create_refresh_jwt,
    decode_refresh_jwt,
    extract_device_info,
    generate_otp_code,
    get_current_user_doc,
    hash_password,
    track_refresh_token_usage,
    validate_and_rotate_refresh_token,
    validate_csrf,
    verify_password,
)
from tests.factories import build_request, make_user


def make_token_doc(request, user_id=None, **overrides):
    user_id = user_id or PydanticObjectId()
    token_doc = Mock()
    token_doc.token = create_refresh_jwt(str(user_id), datetime.now(timezone.utc) + timedelta(days=7))
    token_doc.user_id = user_id
    token_doc.family = "family-1"
    token_doc.expires_at = datetime.now(timezone.utc) + timedelta(days=7)
    token_doc.is_used = False
    token_doc.is_revoked = False
    token_doc.device_changes = 0
    token_doc.device_info = extract_device_info(request)
    token_doc.save = AsyncMock()
    for key, value in overrides.items():
        setattr(token_doc, key, value)
    return token_doc


class TestTokens:

    def test_access_token_round_trip(self):
        token = create_access_token({"sub": "user-1"})

        assert _decode_access_token(token) == "user-1"

    def test_refresh_tokens_are_unique(self):
        expires_at = datetime.now(timezone.utc) + timedelta(days=7)

        first = create_refresh_jwt("user-1", expires_at)
        second = create_refresh_jwt("user-1", expires_at)

        assert first != second
        assert decode_refresh_jwt(first) == "user-1"

    def test_access_token_is_not_a_refresh_token(self):
        with pytest.raises(TokenRotationError) as exc_info:
            decode_refresh_jwt(create_access_token({"sub": "user-1"}))

        assert exc_info.value.reason == "invalid"

    def test_password_hashing(self):
        hashed = hash_password("Analytical@1843")

        assert verify_password("Analytical@1843", hashed)
        assert not verify_password("analytical@1843", hashed)

    def test_otp_code_format(self):
        code = generate_otp_code()

        assert len(code) == 4
        int(code, 16)

    def test_device_fingerprint_depends_on_ip(self):
        first = extract_device_info(build_request())
        second = extract_device_info(build_request(client=("198.51.100.9", 1234)))

        assert first.ip_address == "203.0.113.7"
        assert first.device_fingerprint != second.device_fingerprint


class TestRotation:

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=None)

            with pytest.raises(TokenRotationError) as exc_info:
                await validate_and_rotate_refresh_token("missing", build_request())

            assert exc_info.value.reason == "not_found"

    @pytest.mark.asyncio
    async def test_expired_token(self):
        request = build_request()
        token_doc = make_token_doc(request, expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)

            with pytest.raises(TokenRotationError) as exc_info:
                await validate_and_rotate_refresh_token(token_doc.token, request)

            assert exc_info.value.reason == "expired"

    @pytest.mark.asyncio
    async def test_reuse_revokes_family(self):
        request = build_request()
        token_doc = make_token_doc(request, is_used=True)
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_token_model.revoke_family = AsyncMock(return_value=3)

            with pytest.raises(TokenRotationError) as exc_info:
                await validate_and_rotate_refresh_token(token_doc.token, request)

            assert exc_info.value.reason == "reuse"
            mock_token_model.revoke_family.assert_called_once_with("family-1", "token_reuse")

    @pytest.mark.asyncio
    async def test_revoked_token(self):
        request = build_request()
        token_doc = make_token_doc(request, is_revoked=True)
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_token_model.revoke_family = AsyncMock()

            with pytest.raises(TokenRotationError) as exc_info:
                await validate_and_rotate_refresh_token(token_doc.token, request)

            assert exc_info.value.reason == "revoked"
            mock_token_model.revoke_family.assert_not_called()

    @pytest.mark.asyncio
    async def test_rotation_marks_token_used(self):
        request = build_request()
        user = make_user()
        token_doc = make_token_doc(request, user_id=user.id)
        successor = Mock(token="successor-token")
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model, \
             patch('mongosnap.utils.auth.User') as mock_user_model, \
             patch('mongosnap.utils.auth.create_and_store_refresh_token',
                   new=AsyncMock(return_value=successor)) as mock_create:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_user_model.get = AsyncMock(return_value=user)

            rotated_user, rotated = await validate_and_rotate_refresh_token(token_doc.token, request)

            assert rotated_user is user
            assert rotated is successor
            mock_create.assert_called_once_with(user, request, family="family-1", device_changes=0)
            assert token_doc.is_used is True
            assert token_doc.successor_token == "successor-token"
            assert token_doc.last_used_at is not None
            assert token_doc.device_changes == 0
            token_doc.save.assert_called_once()

    @pytest.mark.asyncio
    async def test_device_change_is_counted(self):
        user = make_user()
        token_doc = make_token_doc(build_request(), user_id=user.id)
        other_device = build_request(client=("198.51.100.9", 1234))
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model, \
             patch('mongosnap.utils.auth.User') as mock_user_model, \
             patch('mongosnap.utils.auth.create_and_store_refresh_token', new=AsyncMock(return_value=Mock(token="next"))) as mock_create:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_user_model.get = AsyncMock(return_value=user)

            await validate_and_rotate_refresh_token(token_doc.token, other_device)

            assert token_doc.device_changes == 1
            assert token_doc.device_info.ip_address == "198.51.100.9"
            assert mock_create.call_args.kwargs["device_changes"] == 1

    @pytest.mark.asyncio
    async def test_too_many_device_changes_revokes_family(self):
        user = make_user()
        token_doc = make_token_doc(build_request(), user_id=user.id, device_changes=MAX_DEVICE_CHANGES)
        other_device = build_request(client=("198.51.100.9", 1234))
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model, \
             patch('mongosnap.utils.auth.User') as mock_user_model, \
             patch('mongosnap.utils.auth.create_and_store_refresh_token', new=AsyncMock()) as mock_create:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_token_model.revoke_family = AsyncMock()
            mock_user_model.get = AsyncMock(return_value=user)

            with pytest.raises(TokenRotationError) as exc_info:
                await validate_and_rotate_refresh_token(token_doc.token, other_device)

            assert exc_info.value.reason == "revoked"
            mock_token_model.revoke_family.assert_called_once_with("family-1", "suspicious_device_changes")
            mock_create.assert_not_called()


class TestRequestTracking:

    @pytest.mark.asyncio
    async def test_without_cookie_nothing_is_looked_up(self):
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock()

            await track_refresh_token_usage(build_request(method="GET"))

            mock_token_model.find_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_same_device_stamps_last_use(self):
        request = build_request(method="GET")
        token_doc = make_token_doc(request, last_used_at=None)
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)

            await track_refresh_token_usage(build_request(method="GET", cookies={"refreshToken": token_doc.token}))

            query = mock_token_model.find_one.call_args.args[0]
            assert query == {"token": token_doc.token, "is_used": False, "is_revoked": False}
            assert token_doc.last_used_at is not None
            assert token_doc.device_changes == 0
            token_doc.save.assert_called_once()

    @pytest.mark.asyncio
    async def test_repeated_device_changes_revoke_family(self):
        token_doc = make_token_doc(build_request())
        with patch('mongosnap.utils.auth.RefreshToken') as mock_token_model:
            mock_token_model.find_one = AsyncMock(return_value=token_doc)
            mock_token_model.revoke_family = AsyncMock()

            for n in range(MAX_DEVICE_CHANGES):
                request = build_request(method="GET", client=(f"198.51.100.{n}", 1234),
                                        cookies={"refreshToken": token_doc.token})
                await track_refresh_token_usage(request)
                assert token_doc.device_info.ip_address == f"198.51.100.{n}"

            assert token_doc.device_changes == MAX_DEVICE_CHANGES
            assert token_doc.save.call_count == MAX_DEVICE_CHANGES
            mock_token_model.revoke_family.assert_not_called()

            with pytest.raises(HTTPException) as exc_info:
                await track_refresh_token_usage(
                    build_request(method="GET", client=("192.0.2.50", 1234), cookies={"refreshToken": token_doc.token}))

            assert exc_info.value.status_code == status.HTTP_401_UNAUTHORIZED
            mock_token_model.revoke_family.assert_called_once_with("family-1", "suspicious_device_changes")
            assert token_doc.save.call_count == MAX_DEVICE_CHANGES

    @pytest.mark.asyncio
    async def test_current_user_doc_tracks_session(self):
        user = make_user()
        request = build_request(method="GET")
        with patch('mongosnap.utils.auth.User') as mock_user_model, \
             patch('mongosnap.utils.auth.track_refresh_token_usage', new=AsyncMock()) as mock_track:
            mock_user_model.get = AsyncMock(return_value=user)

            assert await get_current_user_doc(request, str(user.id)) is user
            mock_track.assert_called_once_with(request)


class TestCsrf:

    @pytest.mark.asyncio
    async def test_safe_methods_skip_check(self, user):
        assert await validate_csrf(build_request(method="GET"), user) is user

    @pytest.mark.asyncio
    async def test_missing_header(self, user):
        with pytest.raises(HTTPException) as exc_info:
            await validate_csrf(build_request(method="POST"), user)

        assert exc_info.value.status_code == status.HTTP_403_FORBIDDEN
        assert exc_info.value.detail == "CSRF token missing"

    @pytest.mark.asyncio
    async def test_expired_token_is_cleared(self):
        user = make_user(clear_expired_csrf_token=Mock(return_value=True))

        with pytest.raises(HTTPException) as exc_info:
            await validate_csrf(build_request(method="POST", headers={"X-CSRF-Token": "abc"}), user)

        assert "expired" in exc_info.value.detail
        user.save.assert_called_once()

    @pytest.mark.asyncio
    async def test_valid_token(self):
        user = make_user(clear_expired_csrf_token=Mock(return_value=False), validate_csrf_token=Mock(return_value=True))

        assert await validate_csrf(build_request(method="PUT", headers={"X-CSRF-Token": "abc"}), user) is user
        user.validate_csrf_token.assert_called_once_with("abc")
