"""
auth/service.py -- Session lifecycle orchestration.

AuthService composes the store, the token issuer, the mailer, the identity
provider, and the TOTP verifier into the operations the HTTP layer exposes:

  register -> verify_email -> login -> (verify_2fa_login) -> refresh -> logout
  login_with_google
  enable_2fa -> confirm_2fa
  request_password_reset -> reset_password

Every failure is raised as an auth.errors.AuthError subclass; api/main.py
renders those into the standard error envelope. Nothing here imports fastapi.

Operations that compare against the clock accept an optional `now` so tests
can hit expiry boundaries exactly. Production callers omit it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth import totp
from auth.errors import Conflict, Expired, NotFound, ServiceUnavailable, Unauthorized, ValidationFailed
from auth.mailer import ConsoleMailer, MailDeliveryError, Mailer, SMTPMailer, reset_message, verification_message
from auth.models import LoginResult, Token, TokenType, User, UserStatus
from auth.oauth import GoogleOAuthBridge, IdentityProvider
from auth.store import UserStore, from_iso, to_iso, utcnow
from auth.tokens import (
    CHALLENGE,
    REFRESH,
    RESET,
    authenticate_user,
    create_access_token,
    create_challenge_token,
    create_refresh_token,
    create_reset_token,
    decode_token,
    generate_confirmation_token,
    hash_password,
    password_fingerprint,
)
from core.config import Settings, get_settings

logger = logging.getLogger("authstarter.auth.service")

_BAD_CREDENTIALS = "Invalid email or password."


class AuthService:
    """Orchestrates the auth flows on top of injected collaborators.

    Usage:
        service = AuthService(UserStore(url), ConsoleMailer(), GoogleOAuthBridge(cid, secret))
        user = service.register("Alice", "alice@example.com", "s3cret-pass")
    """

    def __init__(
        self,
        store: UserStore,
        mailer: Mailer,
        identity_provider: IdentityProvider | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.identity_provider = identity_provider
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, name: str, email: str, password: str) -> User:
        """Create a PENDING user, store a confirmation token, and mail the link.

        The user row and its token are written in one transaction. If the
        mail cannot be delivered the new user is removed again, so the same
        email can register once the mail transport recovers.

        Registering an email that is still PENDING (link lost or expired)
        replaces its name, password, and confirmation token and mails a new
        link. Only an ACTIVE account makes the email taken.
        """
        email = email.strip().lower()
        name = name.strip()
        existing = self.store.get_by_email(email)
        if existing is not None and existing.is_active:
            raise Conflict("An account with that email already exists.", code="email_taken")

        hashed = hash_password(password)
        confirmation = generate_confirmation_token()
        lifetime = self.settings.confirmation_token_expire_seconds
        expires_at = to_iso(utcnow() + timedelta(seconds=lifetime))

        if existing is None:
            try:
                user_id = self.store.create_pending_user(
                    User(name=name, email=email, hashed_password=hashed), confirmation, expires_at
                )
            except IntegrityError as exc:
                # A concurrent registration won the UNIQUE(email) race
                raise Conflict("An account with that email already exists.", code="email_taken") from exc
        else:
            user_id = existing.id
            self.store.reissue_confirmation(user_id, confirmation, expires_at, name=name, hashed_password=hashed)
            logger.info("Re-issued verification link for pending user %s", user_id)

        subject, body = verification_message(self.settings.app_base_url, name, confirmation, lifetime // 3600)
        try:
            self.mailer.send(email, subject, body)
        except MailDeliveryError as exc:
            if existing is None:
                logger.exception("Verification mail for new user %s failed; rolling back registration", user_id)
                self.store.delete_user(user_id)
            else:
                logger.exception("Verification mail for pending user %s failed", user_id)
            raise ServiceUnavailable("Could not send the verification email. Please try again later.") from exc

        logger.info("Registered user %s (pending email verification)", user_id)
        return self._require_user(user_id)

    def verify_email(self, token: str, now: datetime | None = None) -> User:
        """Consume a confirmation token and activate its user. Tokens are single-use."""
        row = self.store.get_token(token, TokenType.CONFIRMATION)
        if row is None:
            raise NotFound("Verification link is invalid or has already been used.")
        if (now or utcnow()) >= from_iso(row.expires_at):
            self.store.delete_token(token)
            raise Expired("Verification link has expired. Register again with the same email to get a new one.")
        if not self.store.delete_token(token):
            # Another request consumed it between the read and the delete
            raise NotFound("Verification link is invalid or has already been used.")

        self.store.update_user(row.user_id, status=UserStatus.ACTIVE)
        logger.info("User %s verified their email", row.user_id)
        return self._require_user(row.user_id)

    # ------------------------------------------------------------------
    # Login, Google sign-in, refresh, logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> LoginResult:
        """Password login. Returns tokens, or a 2FA challenge when the user has 2FA enabled.

        Unknown email, wrong password, unverified account, and OAuth-only
        account all raise the same Unauthorized("bad_credentials").
        """
        user = authenticate_user(self.store, email.strip().lower(), password)
        if user is None:
            raise Unauthorized(_BAD_CREDENTIALS, code="bad_credentials")
        return self._complete_login(user)

    def login_with_google(self, code: str) -> LoginResult:
        """Exchange a Google authorization code and sign the matching local user in.

        Unknown email: a new ACTIVE user without a local password.
        Existing PENDING user: activated -- Google has proven the address.
        """
        if self.identity_provider is None:
            raise ServiceUnavailable("Google sign-in is not configured.")

        identity = self.identity_provider.exchange(code)
        user = self.store.get_by_email(identity.email)
        if user is None:
            try:
                user_id = self.store.create_user(
                    User(name=identity.name, email=identity.email, status=UserStatus.ACTIVE)
                )
            except IntegrityError:
                # Concurrent first sign-in for the same email created the row
                user = self.store.get_by_email(identity.email)
                if user is None:
                    raise
            else:
                logger.info("Created user %s from Google sign-in", user_id)
                user = self._require_user(user_id)
        elif not user.is_active:
            self.store.update_user(user.id, status=UserStatus.ACTIVE)
            self.store.delete_user_tokens(user.id, TokenType.CONFIRMATION)
            user = self._require_user(user.id)

        return self._complete_login(user)

    def refresh(self, refresh_token: str | None, now: datetime | None = None) -> LoginResult:
        """Mint a new access token from a refresh token.

        The signature alone is not enough: the token must still be stored,
        unexpired, and owned by an ACTIVE user. With rotate_refresh_tokens the
        used row is deleted and a fresh refresh token is returned alongside.
        """
        if not refresh_token:
            raise Unauthorized("Refresh token missing.", code="invalid_token")

        moment = now or utcnow()
        try:
            claims = decode_token(refresh_token, REFRESH, now=moment)
        except Expired:
            self.store.delete_token(refresh_token)
            raise

        row = self.store.get_token(refresh_token, TokenType.REFRESH)
        if row is None or row.user_id != claims["sub"]:
            raise Unauthorized("Refresh token has been revoked.", code="invalid_token")
        if moment >= from_iso(row.expires_at):
            self.store.delete_token(refresh_token)
            raise Expired("Refresh token has expired.")

        user = self.store.get_by_id(row.user_id)
        if user is None or not user.is_active:
            raise Unauthorized("Refresh token has been revoked.", code="invalid_token")

        if self.settings.rotate_refresh_tokens:
            if not self.store.delete_token(refresh_token):
                # Replayed concurrently; only the first caller gets a new pair
                raise Unauthorized("Refresh token has been revoked.", code="invalid_token")
            return self._issue_tokens(user, now)
        return LoginResult(user=user, access_token=create_access_token(user.id, user.email, now))

    def logout(self, refresh_token: str | None) -> None:
        """Revoke the presented refresh token. Unknown or missing tokens are not an error."""
        if refresh_token and self.store.delete_token(refresh_token):
            logger.info("Refresh token revoked on logout")

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def enable_2fa(self, user: User) -> tuple[str, str]:
        """Start TOTP enrollment. Returns (secret, provisioning_uri).

        The secret is stored immediately but the flag stays off until
        confirm_2fa() sees a valid code, so an abandoned enrollment never
        locks the user out. Calling again before confirming replaces the secret.
        """
        if user.is_2fa_enabled:
            raise Conflict("Two-factor authentication is already enabled.", code="2fa_already_enabled")
        secret = totp.generate_secret()
        self.store.update_user(user.id, two_factor_secret=secret, is_2fa_enabled=False)
        return secret, totp.provisioning_uri(secret, user.email, self.settings.totp_issuer)

    def confirm_2fa(self, user: User, code: str, now: datetime | None = None) -> User:
        """Finish enrollment: the first valid code turns is_2fa_enabled on."""
        current = self._require_user(user.id)
        if not current.two_factor_secret:
            raise ValidationFailed("Two-factor enrollment has not been started.", code="2fa_not_started")
        if not totp.verify_code(current.two_factor_secret, code, at=now):
            raise Unauthorized("Invalid verification code.", code="invalid_code")
        if not current.is_2fa_enabled:
            self.store.update_user(current.id, is_2fa_enabled=True)
            logger.info("User %s enabled two-factor authentication", current.id)
        return self._require_user(current.id)

    def verify_2fa_login(self, challenge_token: str | None, code: str, now: datetime | None = None) -> LoginResult:
        """Second login step: a valid challenge plus a valid TOTP code yields the token pair.

        A challenge opens one session. Its stored row is deleted on the first
        valid code; a wrong code leaves it in place so the user can retry.
        """
        invalid = Unauthorized(
            "Two-factor session is invalid or has expired. Please log in again.", code="invalid_challenge"
        )
        if not challenge_token:
            raise Unauthorized("Two-factor session is missing. Please log in again.", code="invalid_challenge")
        try:
            claims = decode_token(challenge_token, CHALLENGE, now=now)
        except Unauthorized as exc:
            raise invalid from exc

        row = self.store.get_token(challenge_token, TokenType.CHALLENGE)
        if row is None or row.user_id != claims["sub"]:
            raise invalid
        user = self.store.get_by_id(claims["sub"])
        if user is None or not user.is_active or not user.is_2fa_enabled or not user.two_factor_secret:
            raise invalid
        if not totp.verify_code(user.two_factor_secret, code, at=now):
            raise Unauthorized("Invalid verification code.", code="invalid_code")
        if not self.store.delete_token(challenge_token):
            # A concurrent request with the same challenge got there first
            raise invalid
        return self._issue_tokens(user, now)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Mail a signed reset link if the email belongs to a user.

        Returns None either way and never raises for an unknown email or a
        failed delivery -- the caller's response must not reveal which case
        happened. The HTTP route runs this as a background task so response
        timing does not reveal it either.
        """
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for an unregistered email")
            return

        token = create_reset_token(user)
        subject, body = reset_message(
            self.settings.app_base_url,
            user.name,
            token,
            self.settings.reset_token_expire_seconds // 60,
        )
        try:
            self.mailer.send(user.email, subject, body)
        except MailDeliveryError:
            logger.exception("Password reset mail for user %s failed", user.id)
            return
        logger.info("Password reset link sent to user %s", user.id)

    def reset_password(self, token: str, new_password: str, now: datetime | None = None) -> User:
        """Replace the password hash using a reset token.

        The token's password fingerprint must match the current hash, so a
        link works once. All refresh tokens are revoked: sessions opened with
        the old password end here. A PENDING user is activated -- receiving
        the reset mail proves control of the address.
        """
        claims = decode_token(token, RESET, now=now)
        user = self.store.get_by_id(claims["sub"])
        if user is None or not hmac.compare_digest(
            str(claims.get("pfp", "")), password_fingerprint(user.hashed_password)
        ):
            raise Unauthorized("Reset link is invalid or has already been used.", code="invalid_token")

        self.store.update_user(user.id, hashed_password=hash_password(new_password), status=UserStatus.ACTIVE)
        self.store.delete_user_tokens(user.id)
        logger.info("User %s reset their password", user.id)
        return self._require_user(user.id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete_login(self, user: User) -> LoginResult:
        if user.is_2fa_enabled:
            challenge, expires_at = create_challenge_token(user.id)
            self.store.create_token(
                Token(user_id=user.id, token=challenge, type=TokenType.CHALLENGE, expires_at=to_iso(expires_at))
            )
            return LoginResult(user=user, challenge_token=challenge)
        return self._issue_tokens(user)

    def _issue_tokens(self, user: User, now: datetime | None = None) -> LoginResult:
        access = create_access_token(user.id, user.email, now)
        refresh, expires_at = create_refresh_token(user.id, now)
        self.store.create_token(
            Token(user_id=user.id, token=refresh, type=TokenType.REFRESH, expires_at=to_iso(expires_at))
        )
        return LoginResult(user=user, access_token=access, refresh_token=refresh)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user


# ---------------------------------------------------------------------------
# Collaborator factories -- pick concrete implementations from Settings
# ---------------------------------------------------------------------------


def build_mailer(settings: Settings) -> Mailer:
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- outgoing mail will be logged, not sent")
        return ConsoleMailer()
    return SMTPMailer(
        settings.smtp_host,
        settings.smtp_port,
        settings.smtp_username,
        settings.smtp_password,
        sender=settings.mail_from,
        use_tls=settings.smtp_use_tls,
        timeout_seconds=settings.smtp_timeout_seconds,
    )


def build_identity_provider(settings: Settings) -> IdentityProvider | None:
    if not settings.google_enabled:
        return None
    logger.info("Google OAuth provider registered")
    return GoogleOAuthBridge(
        settings.google_client_id,
        settings.google_client_secret,
        redirect_uri=settings.google_redirect_uri,
        timeout_seconds=settings.oauth_timeout_seconds,
    )
