"""
auth/tokens.py -- JWT, password hashing, confirmation tokens, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Four token kinds share one signer and are told
       apart by the "typ" claim -- an access token can never be replayed as a
       refresh or reset token. Every token carries the configured key id in
       its "kid" header; a token signed under a different kid is rejected, so
       rotating SECRET_KEY together with SECRET_KEY_ID invalidates everything
       issued before.

         access   -- short-lived (minutes), authorizes API calls
         refresh  -- long-lived (days), also persisted server-side; the stored
                     row is what makes it revocable
         reset    -- self-contained (not persisted); carries a fingerprint of
                     the password hash it was issued against, so it stops
                     working the moment the password changes
         2fa      -- minutes-long challenge proving the password step passed;
                     also persisted, and its row is deleted on the first
                     valid code so one challenge opens one session

       Expiry is checked against an injectable "now" rather than inside
       jwt.decode(), so the service and the tests share one clock.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered [C1].

  Confirmation tokens: secrets.token_urlsafe(32) -- opaque, 256 bits, stored
       in the tokens table with a 24h expiry and deleted on first use.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import Expired, Unauthorized
from auth.store import utcnow
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("authstarter.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"
RESET = "reset"
CHALLENGE = "2fa"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
CHALLENGE_COOKIE = "two_factor_challenge"
# The refresh cookie is only ever needed by /refresh and /logout.
REFRESH_COOKIE_PATH = "/api/v1/auth"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps passwords at
    128 characters, and the request models reject anything shorter than 8.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authstarter_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, lifetime_seconds: int, now: datetime | None) -> tuple[str, datetime]:
    # Whole seconds: the JWT "exp" claim and the stored expires_at must agree
    issued = (now or utcnow()).replace(microsecond=0)
    expires_at = issued + timedelta(seconds=lifetime_seconds)
    payload = {**claims, "iat": issued, "exp": expires_at}
    token = jwt.encode(
        payload,
        _settings.secret_key,
        algorithm=_ALGORITHM,
        headers={"kid": _settings.secret_key_id},
    )
    return token, expires_at


def create_access_token(user_id: str, email: str, now: datetime | None = None) -> str:
    """Encode a signed access JWT. Lifetime: Settings.access_token_expire_seconds."""
    token, _ = _encode(
        {"sub": user_id, "email": email, "typ": ACCESS},
        _settings.access_token_expire_seconds,
        now,
    )
    return token


def create_refresh_token(user_id: str, now: datetime | None = None) -> tuple[str, datetime]:
    """Encode a signed refresh JWT and return it with its expiry.

    The jti makes two tokens minted for the same user in the same second
    distinct, which the UNIQUE constraint on tokens.token requires.
    """
    return _encode(
        {"sub": user_id, "typ": REFRESH, "jti": uuid.uuid4().hex},
        _settings.refresh_token_expire_seconds,
        now,
    )


def create_challenge_token(user_id: str, now: datetime | None = None) -> tuple[str, datetime]:
    """Encode a 2FA challenge JWT and return it with its expiry.

    The caller stores it as a CHALLENGE row; deleting that row on the first
    successful code is what makes a challenge single-use.
    """
    return _encode(
        {"sub": user_id, "typ": CHALLENGE, "jti": uuid.uuid4().hex},
        _settings.two_factor_challenge_expire_seconds,
        now,
    )


def create_reset_token(user: User, now: datetime | None = None) -> str:
    token, _ = _encode(
        {"sub": user.id, "typ": RESET, "pfp": password_fingerprint(user.hashed_password)},
        _settings.reset_token_expire_seconds,
        now,
    )
    return token


def password_fingerprint(hashed_password: str | None) -> str:
    """Short HMAC of the stored hash. Changes whenever the password does."""
    digest = hmac.new(
        _settings.secret_key.encode(),
        (hashed_password or "").encode(),
        hashlib.sha256,
    ).hexdigest()
    return digest[:16]


def decode_token(token: str, token_type: str, now: datetime | None = None) -> dict:
    """Verify signature, key id, type, and expiry. Returns the claims dict.

    Raises:
        Expired:      the signature is good but now >= exp.
        Unauthorized: anything else -- bad signature, wrong kid, wrong typ,
                      missing claims, garbage input.
    """
    try:
        header = jwt.get_unverified_header(token)
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as exc:
        raise Unauthorized("Invalid or malformed token.", code="invalid_token") from exc

    if header.get("kid") != _settings.secret_key_id:
        raise Unauthorized("Invalid or malformed token.", code="invalid_token")
    if payload.get("typ") != token_type or "sub" not in payload or "exp" not in payload:
        raise Unauthorized("Invalid or malformed token.", code="invalid_token")

    if (now or utcnow()).timestamp() >= payload["exp"]:
        raise Expired("Token has expired.")
    return payload


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure.

    Returning None (rather than raising) keeps request authentication simple:
    any invalid token is treated as unauthenticated.
    """
    try:
        return decode_token(token, ACCESS)
    except Unauthorized:
        return None


def generate_confirmation_token() -> str:
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or OAuth-only user: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    A PENDING (unverified) account is rejected only after the password check,
    so "exists but unverified" costs the same as "wrong password".

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, access_token: str, refresh_token: str | None = None) -> None:
    """Write the access (and optionally refresh) JWT as httpOnly cookies.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT lifetime so both expire together.
    """
    response.set_cookie(
        ACCESS_COOKIE,
        value=access_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.access_token_expire_seconds,
    )
    if refresh_token is not None:
        response.set_cookie(
            REFRESH_COOKIE,
            value=refresh_token,
            httponly=True,
            samesite="lax",
            secure=_settings.secure_cookies,
            max_age=_settings.refresh_token_expire_seconds,
            path=REFRESH_COOKIE_PATH,
        )
    response.delete_cookie(CHALLENGE_COOKIE)


def set_challenge_cookie(response, challenge_token: str) -> None:
    response.set_cookie(
        CHALLENGE_COOKIE,
        value=challenge_token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.two_factor_challenge_expire_seconds,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE)
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    response.delete_cookie(CHALLENGE_COOKIE)
