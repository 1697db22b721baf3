"""Tests for per-session token issuance, verification and rotation."""
from datetime import timedelta

import jwt
import pytest

from conftest import TEST_SECRET
from security.errors import (
    AuthenticationError,
    ConfigurationError,
    DeviceMismatch,
    InvalidRefreshToken,
    InvalidToken,
)
from security.session import SessionRegistry
from security.tokens import (
    TokenService,
    extract_bearer_token,
    generate_device_fingerprint,
)

CLAIMS = {"id": "u1", "email": "u1@example.com", "username": "user_one", "provider": "local"}


class TestConfiguration:
    def test_missing_secret_is_fatal(self, registry):
        with pytest.raises(ConfigurationError):
            TokenService(None, registry)
        with pytest.raises(ConfigurationError):
            TokenService("", registry)

    def test_short_secret_is_fatal(self, registry):
        with pytest.raises(ConfigurationError):
            TokenService("x" * 31, registry)

    def test_32_byte_secret_accepted(self, registry):
        TokenService("x" * 32, registry)


class TestIssueAndVerify:
    def test_verify_after_issue(self, token_service):
        pair = token_service.issue(CLAIMS)
        claims = token_service.verify(pair.access_token)

        assert claims["userId"] == "u1"
        assert claims["email"] == "u1@example.com"
        assert claims["username"] == "user_one"
        assert claims["provider"] == "local"
        assert claims["sessionId"] == pair.session_id
        assert claims["tokenVersion"] == token_service.registry.get(pair.session_id).token_version

    def test_issue_requires_user_id(self, token_service):
        with pytest.raises(ValueError):
            token_service.issue({"email": "x@example.com"})

    def test_verify_touches_session(self, token_service, clock):
        pair = token_service.issue(CLAIMS)
        clock.advance(42)
        token_service.verify(pair.access_token)
        assert token_service.registry.get(pair.session_id).last_activity == clock.now

    def test_verify_fails_after_invalidate(self, token_service):
        pair = token_service.issue(CLAIMS)
        assert token_service.invalidate(pair.session_id) is True

        with pytest.raises(AuthenticationError):
            token_service.verify(pair.access_token)

    def test_verify_fails_after_invalidate_all(self, token_service):
        first = token_service.issue(CLAIMS)
        second = token_service.issue(CLAIMS)
        assert token_service.invalidate_all("u1") == 2

        for pair in (first, second):
            with pytest.raises(InvalidToken):
                token_service.verify(pair.access_token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed_tokens_rejected(self, token_service, token):
        with pytest.raises(InvalidToken):
            token_service.verify(token)

    def test_expired_token_rejected(self, token_service):
        pair = token_service.issue(CLAIMS, expires_in=timedelta(seconds=-10))
        with pytest.raises(InvalidToken) as excinfo:
            token_service.verify(pair.access_token)
        assert "expired" in excinfo.value.reason.lower()

    def test_user_mismatch_rejected(self, token_service):
        pair = token_service.issue(CLAIMS)
        payload = jwt.decode(pair.access_token, options={"verify_signature": False})
        payload["userId"] = "u2"
        payload["aud"] = "u2"
        forged = jwt.encode(payload, token_service.derive_secret("u2", pair.session_id), algorithm="HS256")

        with pytest.raises(InvalidToken) as excinfo:
            token_service.verify(forged)
        assert "session" in excinfo.value.reason

    def test_token_signed_with_base_secret_rejected(self, token_service):
        pair = token_service.issue(CLAIMS)
        payload = jwt.decode(pair.access_token, options={"verify_signature": False})
        forged = jwt.encode(payload, TEST_SECRET, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify(forged)

    def test_refresh_token_is_not_an_access_token(self, token_service):
        pair = token_service.issue(CLAIMS)
        with pytest.raises(InvalidToken):
            token_service.verify(pair.refresh_token)

    def test_public_message_is_generic(self, token_service):
        with pytest.raises(InvalidToken) as excinfo:
            token_service.verify("garbage")
        assert excinfo.value.public_message == "Invalid or expired token"
        assert excinfo.value.to_dict() == {"success": False, "message": "Invalid or expired token"}


class TestSecretIsolation:
    def test_derived_secrets_are_distinct_per_session(self, token_service):
        secrets_seen = {token_service.derive_secret("u1", f"s{i}") for i in range(50)}
        assert len(secrets_seen) == 50

    def test_derived_secret_is_deterministic(self, token_service):
        assert token_service.derive_secret("u1", "s1") == token_service.derive_secret("u1", "s1")
        assert token_service.derive_secret("u1", "s1") != token_service.derive_secret("u2", "s1")

    def test_sessions_of_same_user_do_not_share_keys(self, token_service):
        a = token_service.issue(CLAIMS)
        b = token_service.issue(CLAIMS)

        with pytest.raises(jwt.InvalidSignatureError):
            jwt.decode(
                a.access_token,
                token_service.derive_secret("u1", b.session_id),
                algorithms=["HS256"],
                audience="u1",
            )

    def test_token_resigned_with_other_session_key_rejected(self, token_service):
        a = token_service.issue(CLAIMS)
        b = token_service.issue(CLAIMS)
        payload = jwt.decode(a.access_token, options={"verify_signature": False})
        forged = jwt.encode(payload, token_service.derive_secret("u1", b.session_id), algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify(forged)

    def test_different_base_secret_cannot_verify(self, registry):
        ours = TokenService(TEST_SECRET, registry)
        theirs = TokenService("another-base-secret-that-is-long-enough", registry)
        pair = theirs.issue(CLAIMS)

        with pytest.raises(InvalidToken):
            ours.verify(pair.access_token)


class TestIdleTimeout:
    @pytest.fixture
    def service(self, registry):
        return TokenService(TEST_SECRET, registry, idle_timeout=60)

    def test_activity_keeps_session_alive(self, service, clock):
        pair = service.issue(CLAIMS)
        for _ in range(3):
            clock.advance(59)
            service.verify(pair.access_token)

    def test_idle_session_rejected_before_sweep(self, service, clock):
        pair = service.issue(CLAIMS)
        clock.advance(61)
        with pytest.raises(InvalidToken):
            service.verify(pair.access_token)
        assert service.registry.get(pair.session_id) is None

    def test_idle_session_cannot_refresh(self, service, clock):
        pair = service.issue(CLAIMS)
        clock.advance(61)
        with pytest.raises(InvalidRefreshToken):
            service.refresh(pair.refresh_token)
        assert service.registry.get(pair.session_id) is None

    def test_no_timeout_leaves_idle_sessions_to_the_sweep(self, registry, clock):
        service = TokenService(TEST_SECRET, registry, access_ttl=3600)
        pair = service.issue(CLAIMS)
        clock.advance(120)
        assert service.verify(pair.access_token)["sessionId"] == pair.session_id


class TestRefresh:
    def test_refresh_rotates_version(self, token_service):
        pair = token_service.issue(CLAIMS)
        before = token_service.registry.get(pair.session_id).token_version

        new_pair = token_service.refresh(pair.refresh_token)
        after = token_service.registry.get(pair.session_id).token_version

        assert after != before
        assert new_pair.session_id == pair.session_id
        claims = token_service.verify(new_pair.access_token)
        assert claims["tokenVersion"] == after

    def test_refresh_keeps_profile_claims(self, token_service):
        pair = token_service.issue(CLAIMS)
        claims = token_service.verify(token_service.refresh(pair.refresh_token).access_token)
        assert claims["email"] == "u1@example.com"
        assert claims["username"] == "user_one"

    def test_stale_access_token_rejected_after_refresh(self, token_service):
        pair = token_service.issue(CLAIMS)
        token_service.refresh(pair.refresh_token)

        with pytest.raises(InvalidToken) as excinfo:
            token_service.verify(pair.access_token)
        assert "stale" in excinfo.value.reason

    def test_stale_refresh_token_rejected(self, token_service):
        pair = token_service.issue(CLAIMS)
        new_pair = token_service.refresh(pair.refresh_token)
        version = token_service.registry.get(pair.session_id).token_version

        with pytest.raises(InvalidRefreshToken):
            token_service.refresh(pair.refresh_token)

        # the rejected attempt did not move the session
        assert token_service.registry.get(pair.session_id).token_version == version
        token_service.verify(new_pair.access_token)

    def test_version_pinning_can_be_disabled(self, registry):
        lenient = TokenService(TEST_SECRET, registry, enforce_version=False)
        pair = lenient.issue(CLAIMS)
        lenient.refresh(pair.refresh_token)

        assert lenient.verify(pair.access_token)["userId"] == "u1"

    def test_refresh_after_logout_fails(self, token_service):
        pair = token_service.issue(CLAIMS)
        token_service.invalidate(pair.session_id)
        with pytest.raises(InvalidRefreshToken):
            token_service.refresh(pair.refresh_token)

    def test_access_token_cannot_refresh(self, token_service):
        pair = token_service.issue(CLAIMS)
        with pytest.raises(InvalidRefreshToken):
            token_service.refresh(pair.access_token)

    def test_device_mismatch(self, token_service):
        pair = token_service.issue(CLAIMS, device_fingerprint="fp-laptop")
        with pytest.raises(DeviceMismatch):
            token_service.refresh(pair.refresh_token, device_fingerprint="fp-phone")

    def test_device_match_or_absent_is_allowed(self, token_service):
        pair = token_service.issue(CLAIMS, device_fingerprint="fp-laptop")
        pair = token_service.refresh(pair.refresh_token, device_fingerprint="fp-laptop")
        token_service.refresh(pair.refresh_token)

    def test_session_without_fingerprint_skips_binding(self, token_service):
        pair = token_service.issue(CLAIMS)
        token_service.refresh(pair.refresh_token, device_fingerprint="anything")

    def test_device_mismatch_is_an_authentication_error(self):
        assert issubclass(DeviceMismatch, AuthenticationError)


class TestListSessions:
    def test_list_sessions_projection(self, token_service, clock):
        a = token_service.issue(CLAIMS, device_fingerprint="fp")
        token_service.issue({"id": "u2"})

        rows = token_service.list_sessions("u1")
        assert rows == [{"sessionId": a.session_id, "lastActivity": clock.now, "deviceFingerprint": "fp"}]


class TestHelpers:
    def test_fingerprint_is_stable_hash(self):
        fp = generate_device_fingerprint("Mozilla/5.0", "10.0.0.1")
        assert fp == generate_device_fingerprint("Mozilla/5.0", "10.0.0.1")
        assert fp != generate_device_fingerprint("Mozilla/5.0", "10.0.0.2")
        assert len(fp) == 64

    def test_fingerprint_defaults_unknown(self):
        assert generate_device_fingerprint() == generate_device_fingerprint("unknown", "unknown")

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc.def") == "abc.def"
        assert extract_bearer_token("abc.def") == "abc.def"
        assert extract_bearer_token(None) is None
        assert extract_bearer_token("") is None
        assert extract_bearer_token("Bearer ") is None


def test_registry_shared_between_services_sees_same_sessions(clock):
    registry = SessionRegistry(clock=clock)
    a = TokenService(TEST_SECRET, registry)
    b = TokenService(TEST_SECRET, registry)
    pair = a.issue(CLAIMS)
    assert b.verify(pair.access_token)["sessionId"] == pair.session_id
