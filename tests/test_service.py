"""
tests/test_service.py -- Unit tests for auth/service.py (AuthService).

AuthService runs against a private in-memory store, a RecordingMailer, and a
FakeIdentityProvider (see conftest.py). Clock-sensitive operations receive an
explicit `now` so expiry boundaries are tested exactly.

Coverage:
  - register: PENDING user + one confirmation token + one mail; 409 on an ACTIVE
    duplicate; re-registering a PENDING email mails a fresh link; user and
    token are written atomically; mail outage rolls the registration back
  - verify_email: single use, expiry boundary, unknown token
  - login: bad credentials indistinguishable; PENDING rejected; 2FA gating
  - refresh: stored row required, expiry boundary, rotation and replay, logout
  - 2FA: enrollment confirm, challenge + code login, single-use challenge,
    wrong code, bad challenge
  - password reset: unknown email silent, single-use link, sessions revoked
  - Google sign-in: new user, existing user, PENDING user activated, outages
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from auth import totp
from auth.errors import (
    Conflict,
    Expired,
    NotFound,
    ServiceUnavailable,
    Unauthorized,
    UpstreamUnavailable,
    ValidationFailed,
)
from auth.models import OAuthIdentity, TokenType, User, UserStatus
from auth.service import AuthService
from auth.store import from_iso, utcnow
from auth.tokens import ACCESS, decode_token
from core.config import get_settings

_PASSWORD = "s3cret-pass"


def _active(service: AuthService, mailer, email: str = "alice@example.com", name: str = "Alice") -> User:
    service.register(name, email, _PASSWORD)
    return service.verify_email(mailer.token_for(email))


def _with_2fa(service: AuthService, user: User) -> str:
    secret, _uri = service.enable_2fa(user)
    service.confirm_2fa(user, totp.current_code(secret))
    return secret


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


class TestRegister:
    def test_creates_pending_user_with_one_confirmation_token(self, service, store, mailer) -> None:
        user = service.register("Alice", "Alice@Example.com", _PASSWORD)

        assert user.status == UserStatus.PENDING
        assert user.email == "alice@example.com"
        assert user.hashed_password and user.hashed_password != _PASSWORD
        tokens = store.list_tokens(user.id)
        assert len(tokens) == 1 and tokens[0].type == TokenType.CONFIRMATION
        assert len(mailer.sent) == 1
        assert mailer.sent[0].subject == "Verify your email address"
        assert mailer.token_for("alice@example.com") == tokens[0].token

    def test_confirmation_expires_after_configured_lifetime(self, service, store) -> None:
        before = utcnow()
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        expires_at = from_iso(store.list_tokens(user.id)[0].expires_at)
        lifetime = timedelta(seconds=get_settings().confirmation_token_expire_seconds)
        assert before + lifetime <= expires_at <= utcnow() + lifetime

    def test_duplicate_active_email_conflicts(self, service, store, mailer) -> None:
        _active(service, mailer)
        with pytest.raises(Conflict) as exc_info:
            service.register("Other", "ALICE@example.com", "another-pass")
        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "email_taken"
        assert store.count_users() == 1
        assert len(mailer.sent) == 1

    def test_register_again_after_link_expired(self, service, store, mailer) -> None:
        """An expired link is not a dead end: registering again mails a fresh one."""
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        stale = mailer.token_for("alice@example.com")
        with pytest.raises(Expired):
            service.verify_email(stale, now=utcnow() + timedelta(days=2))

        again = service.register("Alice L", "alice@example.com", "second-pass")

        assert again.id == user.id
        assert again.name == "Alice L"
        assert store.count_users() == 1
        fresh = mailer.token_for("alice@example.com")
        assert fresh != stale
        assert service.verify_email(fresh).is_active
        assert service.login("alice@example.com", "second-pass").access_token

    def test_register_again_replaces_pending_link(self, service, store, mailer) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        first = mailer.token_for("alice@example.com")

        service.register("Alice", "alice@example.com", _PASSWORD)

        tokens = store.list_tokens(user.id, TokenType.CONFIRMATION)
        assert [t.token for t in tokens] == [mailer.token_for("alice@example.com")]
        with pytest.raises(NotFound):
            service.verify_email(first)

    def test_mail_outage_on_register_again_keeps_user(self, service, store, mailer) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        mailer.fail = True
        with pytest.raises(ServiceUnavailable):
            service.register("Alice", "alice@example.com", _PASSWORD)
        mailer.fail = False

        assert store.get_by_id(user.id).status == UserStatus.PENDING
        service.register("Alice", "alice@example.com", _PASSWORD)
        assert service.verify_email(mailer.token_for("alice@example.com")).is_active

    def test_failed_token_insert_leaves_no_user(self, service, store, mailer) -> None:
        """User and confirmation token are written together or not at all."""

        def locked(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("INSERT INTO TOKENS"):
                raise OperationalError(statement, parameters, Exception("database is locked"))

        event.listen(store.engine, "before_cursor_execute", locked)
        try:
            with pytest.raises(OperationalError):
                service.register("Bob", "bob@example.com", _PASSWORD)
        finally:
            event.remove(store.engine, "before_cursor_execute", locked)

        assert store.get_by_email("bob@example.com") is None
        assert mailer.sent == []
        user = service.register("Bob", "bob@example.com", _PASSWORD)
        assert len(store.list_tokens(user.id, TokenType.CONFIRMATION)) == 1

    def test_mail_outage_rolls_back(self, service, store, mailer) -> None:
        mailer.fail = True
        with pytest.raises(ServiceUnavailable):
            service.register("Alice", "alice@example.com", _PASSWORD)
        assert store.get_by_email("alice@example.com") is None

        mailer.fail = False
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        assert user.status == UserStatus.PENDING


class TestVerifyEmail:
    def test_activates_and_consumes_token(self, service, store, mailer) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        token = mailer.token_for("alice@example.com")

        verified = service.verify_email(token)

        assert verified.id == user.id
        assert verified.status == UserStatus.ACTIVE
        assert store.list_tokens(user.id, TokenType.CONFIRMATION) == []
        with pytest.raises(NotFound):
            service.verify_email(token)

    def test_unknown_token(self, service) -> None:
        with pytest.raises(NotFound) as exc_info:
            service.verify_email("no-such-token")
        assert exc_info.value.status_code == 404

    def test_expiry_boundary(self, service, store, mailer) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        token = mailer.token_for("alice@example.com")
        expires_at = from_iso(store.get_token(token, TokenType.CONFIRMATION).expires_at)

        with pytest.raises(Expired) as exc_info:
            service.verify_email(token, now=expires_at)
        assert exc_info.value.status_code == 401
        assert store.get_by_id(user.id).status == UserStatus.PENDING
        # An expired token is removed on first sight
        with pytest.raises(NotFound):
            service.verify_email(token, now=expires_at - timedelta(seconds=1))

    def test_valid_just_before_expiry(self, service, store, mailer) -> None:
        service.register("Alice", "alice@example.com", _PASSWORD)
        token = mailer.token_for("alice@example.com")
        expires_at = from_iso(store.get_token(token, TokenType.CONFIRMATION).expires_at)
        assert service.verify_email(token, now=expires_at - timedelta(microseconds=1)).is_active

    def test_refresh_token_cannot_verify_email(self, service, mailer) -> None:
        user = _active(service, mailer)
        result = service.login(user.email, _PASSWORD)
        with pytest.raises(NotFound):
            service.verify_email(result.refresh_token)


# ---------------------------------------------------------------------------
# Login, refresh, logout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_issues_and_stores_tokens(self, service, store, mailer) -> None:
        user = _active(service, mailer)

        result = service.login("ALICE@example.com", _PASSWORD)

        assert not result.two_factor_required
        assert decode_token(result.access_token, ACCESS)["sub"] == user.id
        stored = store.get_token(result.refresh_token, TokenType.REFRESH)
        assert stored is not None and stored.user_id == user.id

    def test_failures_are_indistinguishable(self, service, mailer) -> None:
        _active(service, mailer)
        service.register("Pending", "pending@example.com", _PASSWORD)

        errors = []
        for email, password in [
            ("alice@example.com", "wrong-pass"),
            ("ghost@example.com", _PASSWORD),
            ("pending@example.com", _PASSWORD),
        ]:
            with pytest.raises(Unauthorized) as exc_info:
                service.login(email, password)
            errors.append((exc_info.value.status_code, exc_info.value.code, exc_info.value.message))

        assert len(set(errors)) == 1
        assert errors[0][:2] == (401, "bad_credentials")

    def test_two_factor_user_gets_challenge_only(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        _with_2fa(service, user)

        result = service.login(user.email, _PASSWORD)

        assert result.two_factor_required
        assert result.access_token is None and result.refresh_token is None
        assert store.list_tokens(user.id, TokenType.REFRESH) == []


class TestRefresh:
    @pytest.fixture
    def static_service(self, store, mailer, identity_provider) -> AuthService:
        settings = get_settings().model_copy(update={"rotate_refresh_tokens": False})
        return AuthService(store, mailer, identity_provider, settings)

    def test_expiry_boundary(self, static_service, store, mailer) -> None:
        _active(static_service, mailer)
        refresh = static_service.login("alice@example.com", _PASSWORD).refresh_token
        expires_at = from_iso(store.get_token(refresh, TokenType.REFRESH).expires_at)

        result = static_service.refresh(refresh, now=expires_at - timedelta(seconds=1))
        assert result.access_token and result.refresh_token is None

        with pytest.raises(Expired):
            static_service.refresh(refresh, now=expires_at)
        assert store.get_token(refresh, TokenType.REFRESH) is None

    def test_without_rotation_token_is_reusable(self, static_service, mailer) -> None:
        _active(static_service, mailer)
        refresh = static_service.login("alice@example.com", _PASSWORD).refresh_token
        assert static_service.refresh(refresh).access_token
        assert static_service.refresh(refresh).access_token

    def test_rotation_replaces_token(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        first = service.login(user.email, _PASSWORD).refresh_token

        rotated = service.refresh(first)

        assert rotated.refresh_token and rotated.refresh_token != first
        assert store.get_token(first, TokenType.REFRESH) is None
        assert store.get_token(rotated.refresh_token, TokenType.REFRESH) is not None
        with pytest.raises(Unauthorized) as exc_info:
            service.refresh(first)
        assert exc_info.value.code == "invalid_token"

    def test_missing_or_garbage_token(self, service) -> None:
        for value in (None, "", "garbage"):
            with pytest.raises(Unauthorized):
                service.refresh(value)

    def test_access_token_is_not_a_refresh_token(self, service, mailer) -> None:
        user = _active(service, mailer)
        access = service.login(user.email, _PASSWORD).access_token
        with pytest.raises(Unauthorized):
            service.refresh(access)

    def test_logout_revokes(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        refresh = service.login(user.email, _PASSWORD).refresh_token

        service.logout(refresh)

        assert store.get_token(refresh, TokenType.REFRESH) is None
        with pytest.raises(Unauthorized):
            service.refresh(refresh)
        # Logging out twice, or without a token, is not an error
        service.logout(refresh)
        service.logout(None)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TestTwoFactor:
    def test_enable_does_not_gate_login_until_confirmed(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret, uri = service.enable_2fa(user)

        assert secret in uri
        stored = store.get_by_id(user.id)
        assert stored.two_factor_secret == secret and stored.is_2fa_enabled is False
        assert not service.login(user.email, _PASSWORD).two_factor_required

    def test_confirm_with_wrong_code(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret, _ = service.enable_2fa(user)
        now = utcnow()
        wrong = totp.current_code(secret, now + timedelta(minutes=10))
        if totp.verify_code(secret, wrong, at=now):
            pytest.skip("random collision between distant codes")

        with pytest.raises(Unauthorized) as exc_info:
            service.confirm_2fa(user, wrong, now=now)
        assert exc_info.value.code == "invalid_code"
        assert store.get_by_id(user.id).is_2fa_enabled is False

    def test_confirm_before_enable(self, service, mailer) -> None:
        user = _active(service, mailer)
        with pytest.raises(ValidationFailed):
            service.confirm_2fa(user, "123456")

    def test_enable_twice_conflicts(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        _with_2fa(service, user)
        with pytest.raises(Conflict):
            service.enable_2fa(store.get_by_id(user.id))

    def test_challenge_plus_code_completes_login(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret = _with_2fa(service, user)
        challenge = service.login(user.email, _PASSWORD).challenge_token
        now = utcnow()

        result = service.verify_2fa_login(challenge, totp.current_code(secret, now), now=now)

        assert result.access_token and result.refresh_token
        assert store.get_token(result.refresh_token, TokenType.REFRESH) is not None

    def test_challenge_opens_one_session(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret = _with_2fa(service, user)
        challenge = service.login(user.email, _PASSWORD).challenge_token
        now = utcnow()
        code = totp.current_code(secret, now)

        service.verify_2fa_login(challenge, code, now=now)

        assert store.get_token(challenge, TokenType.CHALLENGE) is None
        with pytest.raises(Unauthorized) as exc_info:
            service.verify_2fa_login(challenge, code, now=now)
        assert exc_info.value.code == "invalid_challenge"
        assert len(store.list_tokens(user.id, TokenType.REFRESH)) == 1

    def test_wrong_code_keeps_challenge_for_retry(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret = _with_2fa(service, user)
        challenge = service.login(user.email, _PASSWORD).challenge_token
        now = utcnow()
        wrong = totp.current_code(secret, now + timedelta(minutes=10))
        if totp.verify_code(secret, wrong, at=now):
            pytest.skip("random collision between distant codes")

        with pytest.raises(Unauthorized):
            service.verify_2fa_login(challenge, wrong, now=now)

        assert store.get_token(challenge, TokenType.CHALLENGE) is not None
        assert service.verify_2fa_login(challenge, totp.current_code(secret, now), now=now).access_token

    def test_wrong_code_issues_nothing(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        secret = _with_2fa(service, user)
        challenge = service.login(user.email, _PASSWORD).challenge_token
        now = utcnow()
        wrong = totp.current_code(secret, now + timedelta(minutes=10))
        if totp.verify_code(secret, wrong, at=now):
            pytest.skip("random collision between distant codes")

        with pytest.raises(Unauthorized) as exc_info:
            service.verify_2fa_login(challenge, wrong, now=now)
        assert exc_info.value.code == "invalid_code"
        assert store.list_tokens(user.id, TokenType.REFRESH) == []

    def test_expired_or_foreign_challenge(self, service, mailer) -> None:
        user = _active(service, mailer)
        secret = _with_2fa(service, user)
        result = service.login(user.email, _PASSWORD)
        later = utcnow() + timedelta(seconds=get_settings().two_factor_challenge_expire_seconds + 1)

        with pytest.raises(Unauthorized) as exc_info:
            service.verify_2fa_login(result.challenge_token, totp.current_code(secret, later), now=later)
        assert exc_info.value.code == "invalid_challenge"

        # A full-session access token is not a 2FA challenge
        session = service.verify_2fa_login(result.challenge_token, totp.current_code(secret))
        with pytest.raises(Unauthorized):
            service.verify_2fa_login(session.access_token, totp.current_code(secret))
        with pytest.raises(Unauthorized):
            service.verify_2fa_login(None, "123456")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class TestPasswordReset:
    def test_unknown_email_sends_nothing(self, service, mailer) -> None:
        assert service.request_password_reset("ghost@example.com") is None
        assert mailer.sent == []

    def test_mail_failure_is_swallowed(self, service, mailer) -> None:
        _active(service, mailer)
        mailer.fail = True
        assert service.request_password_reset("alice@example.com") is None

    def test_reset_changes_password_and_revokes_sessions(self, service, store, mailer) -> None:
        user = _active(service, mailer)
        refresh = service.login(user.email, _PASSWORD).refresh_token
        service.request_password_reset(user.email)
        mail = mailer.last_to(user.email)
        assert mail.subject == "Reset your password"

        service.reset_password(mailer.token_for(user.email), "brand-new-pass")

        assert store.list_tokens(user.id) == []
        with pytest.raises(Unauthorized):
            service.refresh(refresh)
        with pytest.raises(Unauthorized):
            service.login(user.email, _PASSWORD)
        assert service.login(user.email, "brand-new-pass").access_token

    def test_link_is_single_use(self, service, mailer) -> None:
        user = _active(service, mailer)
        service.request_password_reset(user.email)
        token = mailer.token_for(user.email)

        service.reset_password(token, "brand-new-pass")

        with pytest.raises(Unauthorized) as exc_info:
            service.reset_password(token, "third-pass-123")
        assert exc_info.value.code == "invalid_token"

    def test_expired_link(self, service, mailer) -> None:
        user = _active(service, mailer)
        service.request_password_reset(user.email)
        token = mailer.token_for(user.email)
        later = utcnow() + timedelta(seconds=get_settings().reset_token_expire_seconds + 1)
        with pytest.raises(Expired):
            service.reset_password(token, "brand-new-pass", now=later)

    def test_reset_activates_pending_user(self, service, store, mailer) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        service.request_password_reset(user.email)
        service.reset_password(mailer.token_for(user.email), "brand-new-pass")
        assert store.get_by_id(user.id).is_active
        assert store.list_tokens(user.id, TokenType.CONFIRMATION) == []


# ---------------------------------------------------------------------------
# Google sign-in
# ---------------------------------------------------------------------------


class TestGoogleLogin:
    def test_new_email_creates_active_user(self, service, store, identity_provider) -> None:
        identity_provider.identities["code-1"] = OAuthIdentity("gina@example.com", "Gina", "sub-1")

        result = service.login_with_google("code-1")

        assert result.user.is_active
        assert result.user.hashed_password is None
        assert result.access_token and result.refresh_token
        assert store.count_users() == 1

    def test_existing_user_is_reused(self, service, store, mailer, identity_provider) -> None:
        user = _active(service, mailer)
        identity_provider.identities["code-1"] = OAuthIdentity(user.email, "Alice G", "sub-1")

        result = service.login_with_google("code-1")

        assert result.user.id == user.id
        assert store.count_users() == 1
        # The local password still works
        assert service.login(user.email, _PASSWORD).access_token

    def test_pending_user_is_activated(self, service, store, identity_provider) -> None:
        user = service.register("Alice", "alice@example.com", _PASSWORD)
        identity_provider.identities["code-1"] = OAuthIdentity(user.email, "Alice", "sub-1")

        result = service.login_with_google("code-1")

        assert result.user.id == user.id and result.user.is_active
        assert store.list_tokens(user.id, TokenType.CONFIRMATION) == []

    def test_two_factor_applies_to_google(self, service, mailer, identity_provider) -> None:
        user = _active(service, mailer)
        _with_2fa(service, user)
        identity_provider.identities["code-1"] = OAuthIdentity(user.email, "Alice", "sub-1")
        assert service.login_with_google("code-1").two_factor_required

    def test_rejected_code(self, service, store) -> None:
        with pytest.raises(Unauthorized):
            service.login_with_google("bogus")
        assert store.count_users() == 0

    def test_provider_outage(self, service) -> None:
        with pytest.raises(UpstreamUnavailable) as exc_info:
            service.login_with_google("outage")
        assert exc_info.value.status_code == 502

    def test_not_configured(self, store, mailer) -> None:
        with pytest.raises(ServiceUnavailable) as exc_info:
            AuthService(store, mailer, None).login_with_google("code")
        assert exc_info.value.status_code == 503
