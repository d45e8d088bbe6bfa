"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain. Deliverability
# is proven by the verification mail, not by a regex.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

_PASSWORD_MIN = 8
# bcrypt only looks at the first 72 bytes; 128 chars keeps inputs sane.
_PASSWORD_MAX = 128


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class RegisterRequest(_EmailBody):
    """Request body for POST /api/v1/auth/register."""

    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/auth/login.

    No minimum length on password: a short wrong password must produce the
    same 401 as any other wrong password, not a 400 that hints at the policy.
    """

    password: str = Field(min_length=1, max_length=_PASSWORD_MAX)


class GoogleLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/google."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=2048)


class VerifyTwoFactorRequest(BaseModel):
    """Request body for POST /api/v1/auth/verify_2fa.

    challenge_token may be omitted when the two_factor_challenge cookie is
    present. With neither, the code confirms a pending 2FA enrollment for
    the authenticated user.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=16)
    challenge_token: Optional[str] = Field(default=None, max_length=4096)


class RequestResetRequest(_EmailBody):
    """Request body for POST /api/v1/auth/request_reset."""


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset_password."""

    token: str = Field(min_length=1, max_length=4096)
    new_password: str = Field(min_length=_PASSWORD_MIN, max_length=_PASSWORD_MAX)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public summary of a user. Never includes the password hash or TOTP secret."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str
    status: str
    two_factor_enabled: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from an auth User dataclass."""
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            status=user.status.value,
            two_factor_enabled=user.is_2fa_enabled,
            created_at=user.created_at or "",
        )


class LoginResponse(BaseModel):
    """Response for login, google, and verify_2fa.

    two_factor_required=True: no session was opened; challenge_token (also set
    as a cookie) must be sent back to /verify_2fa with a TOTP code.
    two_factor_required=False: access and refresh cookies are set. The access
    token is echoed for clients that prefer an Authorization header.
    """

    model_config = ConfigDict(frozen=True)

    two_factor_required: bool = False
    user: Optional[UserResponse] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    challenge_token: Optional[str] = None


class RefreshResponse(BaseModel):
    """Response for GET /api/v1/auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class TwoFactorSetupResponse(BaseModel):
    """Response for POST /api/v1/auth/enable_2fa.

    provisioning_uri is the otpauth:// payload to render as a QR code.
    """

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
