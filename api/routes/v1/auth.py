"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register          -- create PENDING account, mail verification link
  GET  /api/v1/auth/verify_email      -- consume confirmation token, activate account
  POST /api/v1/auth/login             -- password login; sets cookies or returns 2FA challenge
  POST /api/v1/auth/google            -- Google authorization code sign-in
  GET  /api/v1/auth/refresh           -- new access cookie from the refresh cookie
  POST /api/v1/auth/verify_2fa        -- finish a 2FA login, or confirm 2FA enrollment
  POST /api/v1/auth/enable_2fa        -- start 2FA enrollment (requires auth)
  POST /api/v1/auth/request_reset     -- mail a reset link; identical response for any email
  POST /api/v1/auth/reset_password    -- set a new password with a reset token
  POST /api/v1/auth/logout            -- revoke refresh token, clear cookies
  GET  /api/v1/auth/me                -- current user (requires auth)

Security:
  [H2] Every credential-checking route is rate-limited per IP (AUTH_RATE_LIMIT).
  [C1] AuthService.login() goes through authenticate_user() -- timing equalized.
  [M5] Cache-Control: no-store on every response that carries tokens.
  request_reset sends mail in a background task so neither the body nor the
  response time tells an existing email from an unknown one.

Errors raised by AuthService are auth.errors.AuthError subclasses; the
handler in api/main.py renders them, so routes here never build error bodies.

Decorator order: @router.<method> outermost, @limiter.limit directly on the
function, so FastAPI registers the rate-limited wrapper.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    GoogleLoginRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshResponse,
    RegisterRequest,
    RequestResetRequest,
    ResetPasswordRequest,
    TwoFactorSetupResponse,
    UserResponse,
    VerifyTwoFactorRequest,
)
from auth.dependencies import get_current_user, try_get_current_user
from auth.errors import Unauthorized
from auth.models import LoginResult, User
from auth.service import AuthService
from auth.tokens import (
    CHALLENGE_COOKIE,
    REFRESH_COOKIE,
    clear_auth_cookies,
    set_auth_cookies,
    set_challenge_cookie,
)
from core.config import get_settings

# Auth policy:
# - register, verify_email, login, google, refresh, verify_2fa (challenge),
#   request_reset, reset_password, logout: public
# - enable_2fa, me, verify_2fa (enrollment): requires auth (get_current_user)
router = APIRouter()

_settings = get_settings()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_response(result: LoginResult) -> JSONResponse:
    """Render a LoginResult: either a 2FA challenge or a full session with cookies."""
    if result.two_factor_required:
        resp = JSONResponse(
            content=LoginResponse(
                two_factor_required=True,
                challenge_token=result.challenge_token,
            ).model_dump(),
        )
        set_challenge_cookie(resp, result.challenge_token)
        return _no_store(resp)

    resp = JSONResponse(
        content=LoginResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.access_token_expire_seconds,
        ).model_dump(),
    )
    set_auth_cookies(resp, result.access_token, result.refresh_token)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a PENDING account and mail its verification link.

    409 if an ACTIVE account has the email. An unverified email registers
    again and gets a fresh link.
    """
    user = _service(request).register(body.name, body.email, body.password)
    return UserResponse.from_user(user)


@router.get("/auth/verify_email", response_model=UserResponse)
def verify_email(request: Request, token: str) -> UserResponse:
    """Activate the account behind a confirmation token. Each token works once."""
    user = _service(request).verify_email(token)
    return UserResponse.from_user(user)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(AUTH_RATE_LIMIT)  # [H2] brute-force mitigation
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, wrong password, and unverified account all return the same
    401 "bad_credentials" so the response does not reveal which one happened.
    """
    result = _service(request).login(body.email, body.password)
    return _login_response(result)


@router.post("/auth/google", response_model=LoginResponse)
@limiter.limit(AUTH_RATE_LIMIT)
def google_login(request: Request, body: GoogleLoginRequest) -> JSONResponse:
    """Sign in with a Google authorization code. Creates the account on first use."""
    result = _service(request).login_with_google(body.code)
    return _login_response(result)


@router.get("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request) -> JSONResponse:
    """Issue a new access cookie from the refresh cookie.

    With refresh rotation on (the default) the refresh cookie is replaced too
    and the presented token stops working.
    """
    result = _service(request).refresh(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(
        content=RefreshResponse(
            access_token=result.access_token,
            expires_in=_settings.access_token_expire_seconds,
        ).model_dump(),
    )
    set_auth_cookies(resp, result.access_token, result.refresh_token)
    return _no_store(resp)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh token server-side and clear every auth cookie."""
    _service(request).logout(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return UserResponse.from_user(current_user)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/auth/enable_2fa", response_model=TwoFactorSetupResponse)
def enable_2fa(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Start TOTP enrollment. 2FA stays off until /verify_2fa confirms a code."""
    secret, uri = _service(request).enable_2fa(current_user)
    resp = JSONResponse(content=TwoFactorSetupResponse(secret=secret, provisioning_uri=uri).model_dump())
    return _no_store(resp)


@router.post("/auth/verify_2fa")
@limiter.limit(AUTH_RATE_LIMIT)  # [H2] a 6-digit code is brute-forceable without a limit
def verify_2fa(request: Request, body: VerifyTwoFactorRequest) -> JSONResponse:
    """Check a TOTP code.

    With a challenge (body or cookie): second login step -- sets session cookies.
    Without one: confirms 2FA enrollment for the authenticated user.
    """
    service = _service(request)
    challenge = body.challenge_token or request.cookies.get(CHALLENGE_COOKIE)
    if challenge:
        return _login_response(service.verify_2fa_login(challenge, body.code))

    current_user = try_get_current_user(request)
    if current_user is None:
        raise Unauthorized("Two-factor session is missing. Please log in again.", code="invalid_challenge")
    user = service.confirm_2fa(current_user, body.code)
    return JSONResponse(content=UserResponse.from_user(user).model_dump())


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/request_reset", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)
def request_reset(request: Request, body: RequestResetRequest, background_tasks: BackgroundTasks) -> MessageResponse:
    """Always 200 with the same body, whether or not the email is registered."""
    background_tasks.add_task(_service(request).request_password_reset, body.email)
    return MessageResponse(message="If an account exists for that email, a reset link has been sent.")


@router.post("/auth/reset_password", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password. Ends every existing session of the user."""
    _service(request).reset_password(body.token, body.new_password)
    resp = JSONResponse(content=MessageResponse(message="Password has been reset. Please log in.").model_dump())
    clear_auth_cookies(resp)
    return _no_store(resp)
