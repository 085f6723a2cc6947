import pytest
import pyotp
from unittest.mock import patch
from fastapi import HTTPException

from mongosnap.models.users import BackupCode
from mongosnap.services import rate_limit, totp
from tests.factories import build_request, make_user


class TestRateLimit:

    def test_allow_until_limit(self):
        key = ("198.51.100.1", "login")

        assert all(rate_limit.allow(key, limit=3, window_seconds=60) for _ in range(3))
        assert rate_limit.allow(key, limit=3, window_seconds=60) is False

    def test_keys_are_independent(self):
        rate_limit.allow(("ip-1", "route"), limit=1)

        assert rate_limit.allow(("ip-2", "route"), limit=1) is True
        assert rate_limit.allow(("ip-1", "other"), limit=1) is True

    def test_window_expiry(self):
        key = ("ip-1", "route")
        rate_limit.BUCKET[key] = [0.0]

        assert rate_limit.allow(key, limit=1, window_seconds=60) is True

    @pytest.mark.asyncio
    async def test_dependency_raises_429(self):
        limiter = rate_limit.rate_limiter("test-route", 2, 60, "Slow down")
        request = build_request()

        await limiter(request)
        await limiter(request)
        with pytest.raises(HTTPException) as exc_info:
            await limiter(request)

        assert exc_info.value.status_code == 429
        assert exc_info.value.detail == "Slow down"

    @pytest.mark.asyncio
    async def test_bug_report_limiter_budget(self):
        request = build_request()
        for _ in range(5):
            await rate_limit.bug_report_limiter(request)

        with pytest.raises(HTTPException) as exc_info:
            await rate_limit.bug_report_limiter(request)

        assert exc_info.value.detail == "Too many bug reports submitted. Please try again later."

    @pytest.mark.asyncio
    async def test_rotating_forwarded_header_is_still_limited(self):
        for n in range(10):
            await rate_limit.connection_limiter(build_request(headers={"X-Forwarded-For": f"198.51.100.{n}"}))

        with pytest.raises(HTTPException) as exc_info:
            await rate_limit.connection_limiter(build_request(headers={"X-Forwarded-For": "198.51.100.200"}))

        assert exc_info.value.status_code == 429
        assert list(rate_limit.BUCKET) == [("203.0.113.7", "connection")]

    @pytest.mark.asyncio
    async def test_trusted_proxy_keys_on_forwarded_client(self):
        with patch('mongosnap.utils.text.TRUST_PROXY', True):
            for _ in range(10):
                await rate_limit.connection_limiter(build_request(headers={"X-Forwarded-For": "198.51.100.1"}))

            await rate_limit.connection_limiter(build_request(headers={"X-Forwarded-For": "198.51.100.2"}))
            with pytest.raises(HTTPException):
                await rate_limit.connection_limiter(build_request(headers={"X-Forwarded-For": "198.51.100.1"}))

    def test_sweep_drops_idle_keys(self):
        rate_limit.BUCKET[("ip-old", "route")] = [0.0]
        rate_limit.BUCKET[("ip-empty", "route")] = []
        rate_limit.allow(("ip-new", "route"), limit=1)

        assert rate_limit.sweep() == 2
        assert list(rate_limit.BUCKET) == [("ip-new", "route")]

    def test_allow_sweeps_when_bucket_is_full(self):
        with patch.object(rate_limit, "MAX_TRACKED_KEYS", 3):
            for n in range(3):
                rate_limit.BUCKET[(f"ip-{n}", "route")] = [0.0]

            assert rate_limit.allow(("ip-new", "route"), limit=1) is True

        assert list(rate_limit.BUCKET) == [("ip-new", "route")]

    def test_denied_key_without_hits_is_not_stored(self):
        assert rate_limit.allow(("ip-1", "route"), limit=0) is False
        assert rate_limit.BUCKET == {}


class TestTotp:

    def test_provisioning_uri_and_verify(self):
        secret = totp.generate_secret()
        uri = totp.provisioning_uri(secret, "ada@example.com")

        assert uri.startswith("otpauth://totp/")
        assert "issuer=MongoSnap" in uri
        assert totp.verify_totp(secret, pyotp.TOTP(secret).now()) is True
        assert totp.verify_totp(None, "123456") is False
        assert totp.verify_totp(secret, "") is False

    def test_qr_code_is_png_data_url(self):
        assert totp.generate_qr_code("otpauth://totp/test").startswith("data:image/png;base64,")

    def test_backup_codes_are_hashed(self):
        plain, hashed = totp.generate_backup_codes()

        assert len(plain) == 10
        assert len(set(plain)) == 10
        assert all(len(code) == 9 and code[4] == "-" for code in plain)
        assert all(isinstance(code, BackupCode) for code in hashed)
        assert all(code.code_hash not in plain for code in hashed)

    def test_backup_code_single_use(self):
        plain, hashed = totp.generate_backup_codes(count=2)
        user = make_user(backup_codes=hashed)

        assert totp.use_backup_code(user, plain[0].lower()) is True
        assert totp.use_backup_code(user, plain[0]) is False
        assert totp.remaining_backup_codes(user) == 1
        assert user.backup_codes[0].used_at is not None

    def test_backup_code_hyphen_is_optional(self):
        plain, hashed = totp.generate_backup_codes(count=2)
        user = make_user(backup_codes=hashed)

        assert totp.use_backup_code(user, plain[0].replace("-", "")) is True
        assert totp.use_backup_code(user, " " + plain[1].lower() + " ") is True
        assert totp.remaining_backup_codes(user) == 0

    def test_unknown_backup_code(self):
        _, hashed = totp.generate_backup_codes(count=1)
        user = make_user(backup_codes=hashed)

        assert totp.use_backup_code(user, "ZZZZ-ZZZZ") is False
        assert totp.remaining_backup_codes(user) == 1

    def test_backup_codes_text(self):
        text = totp.backup_codes_text("ada@example.com", ["AAAA-BBBB", "CCCC-DDDD"])

        assert "Account: ada@example.com" in text
        assert text.endswith("AAAA-BBBB\nCCCC-DDDD\n")
