"""
Unit tests for MFA session and trusted-device issuance.
"""

from datetime import timedelta

import pytest
from flask import Response
from freezegun import freeze_time

from ibimina_mfa.security.mfa.models import TrustedDevice
from ibimina_mfa.security.mfa.session import (
    CookieSpec,
    SessionIssuer,
    apply_cookies,
    clear_cookies,
    derive_ip_prefix,
    hash_device_fingerprint,
    hash_user_agent,
)

UA = "Mozilla/5.0 (X11; Linux x86_64)"


@pytest.fixture
def issuer():
    return SessionIssuer("session-secret", "trusted-secret", session_ttl_hours=12, trusted_ttl_days=30)


class TestFingerprint:
    @pytest.mark.parametrize(
        "ip, prefix",
        [
            ("196.12.34.56", "196.12.34"),
            ("196.12.34.56, 10.0.0.1", "196.12.34"),
            ("2001:db8:85a3:1:2:3:4:5", "2001:0db8:85a3:0001"),
            ("not-an-ip", None),
            (None, None),
        ],
    )
    def test_derive_ip_prefix(self, ip, prefix):
        assert derive_ip_prefix(ip) == prefix

    def test_fingerprint_depends_on_all_parts(self):
        ua_hash = hash_user_agent(UA)
        base = hash_device_fingerprint("u1", ua_hash, "196.12.34")
        assert base != hash_device_fingerprint("u2", ua_hash, "196.12.34")
        assert base != hash_device_fingerprint("u1", hash_user_agent("curl"), "196.12.34")
        assert base != hash_device_fingerprint("u1", ua_hash, "196.12.35")


class TestSessionIssuer:
    """Test cases for session and trusted-device tokens."""

    def test_session_cookie_only(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id)
        assert [cookie.name for cookie in cookies] == ["mfa_session"]
        assert cookies[0].max_age == 12 * 3600
        assert issuer.has_valid_session(user.id, cookies[0].value)
        assert not issuer.has_valid_session("someone-else", cookies[0].value)
        assert TrustedDevice.query.count() == 0

    def test_session_expires(self, app, user, issuer):
        with freeze_time("2026-01-01 10:00:00") as frozen:
            token = issuer.create_session_token(user.id)
            frozen.tick(timedelta(hours=12, seconds=1))
            assert not issuer.has_valid_session(user.id, token)

    def test_remember_device(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id, remember_device=True, user_agent=UA, ip="196.12.34.56")
        assert [cookie.name for cookie in cookies] == ["mfa_session", "trusted_device"]
        assert cookies[1].max_age == 30 * 86400
        device = TrustedDevice.query.filter_by(user_id=user.id).one()
        assert device.ip_prefix == "196.12.34"
        assert device.user_agent_hash == hash_user_agent(UA)

    def test_trusted_device_survives_same_network(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id, remember_device=True, user_agent=UA, ip="196.12.34.56")
        device_id = issuer.check_trusted_device(user.id, cookies[1].value, UA, "196.12.34.99")
        assert device_id == TrustedDevice.query.one().device_id

    def test_fingerprint_mismatch_revokes_device(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id, remember_device=True, user_agent=UA, ip="196.12.34.56")
        assert issuer.check_trusted_device(user.id, cookies[1].value, "curl/8.0", "196.12.34.56") is None
        assert TrustedDevice.query.count() == 0

    def test_trusted_token_checks(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id, remember_device=True, user_agent=UA, ip="196.12.34.56")
        assert issuer.check_trusted_device("other-user", cookies[1].value, UA, "196.12.34.56") is None
        assert issuer.check_trusted_device(user.id, cookies[0].value, UA, "196.12.34.56") is None
        assert issuer.check_trusted_device(user.id, None, UA, "196.12.34.56") is None

    def test_deleted_device_is_not_trusted(self, app, user, issuer):
        cookies = issuer.issue_session_cookies(user.id, remember_device=True, user_agent=UA, ip="196.12.34.56")
        TrustedDevice.delete_for_user(user.id)
        assert issuer.check_trusted_device(user.id, cookies[1].value, UA, "196.12.34.56") is None


class TestCookieHelpers:
    def test_apply_and_clear(self, app):
        response = apply_cookies(Response(), [CookieSpec("mfa_session", "token", 60)])
        header = response.headers.getlist("Set-Cookie")[0]
        assert "mfa_session=token" in header
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=Lax" in header
        assert "Path=/" in header

        cleared = clear_cookies(Response(), ["mfa_session", "trusted_device"])
        headers = cleared.headers.getlist("Set-Cookie")
        assert len(headers) == 2
        assert all("Max-Age=0" in header or "Expires=Thu, 01 Jan 1970" in header for header in headers)
