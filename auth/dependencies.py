"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two sources of an access token are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login, google, refresh, and
     verify_2fa routes.
  2. Authorization: Bearer <token> header -- API clients that keep the token
     themselves.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for HTTPException/
Request) because this module is part of the FastAPI dependency injection
system. No imports from api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import ACCESS_COOKIE, decode_access_token


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    A PENDING user is treated as unauthenticated even with a valid token.
    """
    user_store = request.app.state.user_store

    # 1. Cookie
    token: str | None = request.cookies.get(ACCESS_COOKIE)

    # 2. Authorization: Bearer header
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]

    if token:
        payload = decode_access_token(token)
        if payload:
            user = user_store.get_by_id(payload["sub"])
            if user and user.is_active:
                return user

    return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
