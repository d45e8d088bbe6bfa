"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store and the service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UserStatus(str, Enum):
    PENDING = "PENDING"  # registered, email not yet confirmed
    ACTIVE = "ACTIVE"


class TokenType(str, Enum):
    CONFIRMATION = "CONFIRMATION"
    REFRESH = "REFRESH"
    CHALLENGE = "CHALLENGE"  # pending second login step, consumed by verify_2fa


@dataclass
class User:
    """A registered identity.

    hashed_password is None for accounts created through Google sign-in --
    they have no local password and cannot use POST /auth/login until they
    set one through the password reset flow.

    two_factor_secret is written by enable_2fa() before the user has proven
    they can generate codes; is_2fa_enabled only flips after the first
    successful verification, so a half-finished enrollment never gates login.
    """

    name: str
    email: str
    id: str | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    status: UserStatus = UserStatus.PENDING
    two_factor_secret: str | None = None
    is_2fa_enabled: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass
class Token:
    """A persisted, server-side token row.

    Confirmation tokens are random strings; refresh and 2FA challenge tokens
    are the full signed JWT. Either way the row is the authority: a token
    whose row is gone has been consumed or revoked, whatever its signature
    says.
    """

    user_id: str
    token: str
    type: TokenType
    expires_at: str
    id: str | None = None
    created_at: str | None = None


@dataclass
class OAuthIdentity:
    """What an identity provider tells us about the person behind a code."""

    email: str
    name: str
    subject: str


@dataclass
class LoginResult:
    """Outcome of a successful first login step.

    Exactly one of the two shapes is populated: either the token pair, or a
    challenge_token when the user must still pass the second factor.
    """

    user: User
    access_token: str | None = None
    refresh_token: str | None = None
    challenge_token: str | None = None

    @property
    def two_factor_required(self) -> bool:
        return self.challenge_token is not None
