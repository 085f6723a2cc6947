import pytest
from unittest.mock import AsyncMock, Mock, patch
from datetime import datetime, timedelta, timezone
from beanie import PydanticObjectId

from mongosnap.models.refresh_tokens import (
    DeviceInfo,
    RefreshToken,
    compute_security_analytics,
    detect_suspicious_sessions,
    redact_token,
)


def make_token(token="token-a", successor=None, created_at=None, fingerprint="fp-1", ip="10.0.0.1", **overrides):
    now = datetime.now(timezone.utc)
    return RefreshToken.model_construct(
        token=token,
        user_id=PydanticObjectId(),
        family="family-1",
        is_used=False,
        is_revoked=False,
        expires_at=now + timedelta(days=7),
        created_at=created_at or now,
        device_info=DeviceInfo(user_agent="test-agent", ip_address=ip, device_fingerprint=fingerprint),
        successor_token=successor,
        revoked_by=overrides.pop("revoked_by", None),
        **overrides,
    )


class TestRevoke:

    def test_mark_revoked_sets_flags(self):
        token = make_token()

        token.mark_revoked("admin")

        assert token.is_revoked is True
        assert token.revoked_by == "admin"
        assert token.revoked_at >= token.created_at

    def test_revoked_at_never_precedes_created_at(self):
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = make_token(created_at=future)

        token.mark_revoked()

        assert token.revoked_at >= future

    def test_mark_revoked_keeps_successor(self):
        token = make_token()

        token.mark_revoked("user", successor_token="token-b")

        assert token.successor_token == "token-b"

    @pytest.mark.asyncio
    async def test_revoke_persists(self):
        token = make_token()
        with patch.object(RefreshToken, "save", AsyncMock()) as mock_save:
            result = await token.revoke("user")

        assert result is token
        assert token.is_revoked is True
        mock_save.assert_called_once()


class TestFamilyOperations:

    @pytest.mark.asyncio
    async def test_revoke_family_updates_only_live_tokens(self):
        query = Mock()
        query.update = AsyncMock(return_value=Mock(modified_count=3))
        with patch.object(RefreshToken, "find", Mock(return_value=query)) as mock_find:
            await RefreshToken.revoke_family("family-1", "token_reuse")

        mock_find.assert_called_once_with({"family": "family-1", "is_revoked": False})
        update = query.update.call_args.args[0]["$set"]
        assert update["is_revoked"] is True
        assert update["revoked_by"] == "token_reuse"

    @pytest.mark.asyncio
    async def test_cleanup_expired_returns_deleted_count(self):
        query = Mock()
        query.delete = AsyncMock(return_value=Mock(deleted_count=4))
        with patch.object(RefreshToken, "find", Mock(return_value=query)):
            deleted = await RefreshToken.cleanup_expired()

        assert deleted == 4

    @pytest.mark.asyncio
    async def test_revoke_all_for_user_accepts_string_ids(self):
        user_id = PydanticObjectId()
        query = Mock()
        query.update = AsyncMock(return_value=Mock(modified_count=2))
        with patch.object(RefreshToken, "find", Mock(return_value=query)) as mock_find:
            await RefreshToken.revoke_all_for_user(str(user_id), "password_reset")

        mock_find.assert_called_once_with({"user_id": user_id, "is_revoked": False})
        update = query.update.call_args.args[0]["$set"]
        assert update["is_revoked"] is True
        assert update["revoked_by"] == "password_reset"
        assert update["revoked_at"].tzinfo is not None

    @pytest.mark.asyncio
    async def test_active_tokens_are_live_and_newest_first(self):
        user_id = PydanticObjectId()
        tokens = [make_token("token-b"), make_token("token-a")]
        query = Mock()
        query.sort = Mock(return_value=query)
        query.to_list = AsyncMock(return_value=tokens)
        before = datetime.now(timezone.utc)
        with patch.object(RefreshToken, "find", Mock(return_value=query)) as mock_find:
            result = await RefreshToken.get_active_tokens_for_user(user_id)

        assert result == tokens
        filters = mock_find.call_args.args[0]
        assert filters["user_id"] == user_id
        assert filters["is_revoked"] is False
        assert filters["is_used"] is False
        assert filters["expires_at"]["$gt"] >= before
        query.sort.assert_called_once_with("-created_at")

    def test_token_families_are_random_hex(self):
        first = RefreshToken.create_token_family()
        second = RefreshToken.create_token_family()

        assert len(first) == 32
        int(first, 16)
        assert first != second


class TestTokenChain:

    @pytest.mark.asyncio
    async def test_follows_successors(self):
        tokens = {
            "token-a": make_token("token-a", successor="token-b"),
            "token-b": make_token("token-b", successor="token-c"),
            "token-c": make_token("token-c"),
        }

        async def find_one(query):
            return tokens.get(query["token"])

        with patch.object(RefreshToken, "find_one", AsyncMock(side_effect=find_one)):
            chain = await RefreshToken.get_token_chain("token-a")

        assert len(chain) == 3
        assert chain[0]["token"] == redact_token("token-a")
        assert chain[-1]["token"] == redact_token("token-c")

    @pytest.mark.asyncio
    async def test_terminates_on_cycle(self):
        tokens = {
            "token-a": make_token("token-a", successor="token-b"),
            "token-b": make_token("token-b", successor="token-a"),
        }

        async def find_one(query):
            return tokens.get(query["token"])

        with patch.object(RefreshToken, "find_one", AsyncMock(side_effect=find_one)):
            chain = await RefreshToken.get_token_chain("token-a")

        assert len(chain) == 2

    @pytest.mark.asyncio
    async def test_unknown_start_token(self):
        with patch.object(RefreshToken, "find_one", AsyncMock(return_value=None)):
            chain = await RefreshToken.get_token_chain("missing")

        assert chain == []


class TestSecurityAnalytics:

    def test_counts_device_changes_and_events(self):
        base = datetime.now(timezone.utc) - timedelta(days=2)
        tokens = [
            make_token("t1", created_at=base, ip="10.0.0.1"),
            make_token("t2", created_at=base + timedelta(hours=1), ip="10.0.0.2"),
            make_token("t3", created_at=base + timedelta(hours=2), ip="10.0.0.2", revoked_by="token_reuse"),
            make_token("t4", created_at=base + timedelta(hours=3), fingerprint="fp-2", revoked_by="family_breach"),
        ]

        analytics = compute_security_analytics(tokens, days=30)

        assert analytics["total_tokens"] == 4
        assert analytics["unique_devices"] == 2
        assert len(analytics["device_changes"]) == 1
        assert analytics["device_changes"][0]["old_ip"] == "10.0.0.1"
        assert analytics["security_events"]["token_reuse"] == 1
        assert analytics["security_events"]["family_breaches"] == 1
        assert analytics["security_events"]["suspicious_activity"] is False

    def test_rapid_token_creation_is_flagged(self):
        hour = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
        tokens = [make_token(f"t{i}", created_at=hour + timedelta(minutes=i)) for i in range(6)]

        findings = detect_suspicious_sessions(tokens)

        assert findings[0]["type"] == "rapid_token_creation"
        assert findings[0]["count"] == 6

    def test_many_ip_addresses_are_flagged(self):
        base = datetime(2026, 1, 5, tzinfo=timezone.utc)
        tokens = [make_token(f"t{i}", created_at=base + timedelta(hours=i), ip=f"10.0.0.{i}") for i in range(11)]

        findings = detect_suspicious_sessions(tokens)

        assert [f["type"] for f in findings] == ["multiple_ip_addresses"]
        assert findings[0]["unique_ips"] == 11
