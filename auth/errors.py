"""
auth/errors.py -- Domain error taxonomy for the auth layer.

Every failure the auth layer reports is an AuthError subclass carrying a
stable machine-readable code and the HTTP status it maps to. api/main.py
turns any AuthError into the standard ErrorResponse envelope, so services
never import fastapi and routes never build error payloads by hand.

Messages are user-facing. Never put query text, stack detail, token values,
or "this email exists" hints into them.

Layer rule: no imports from api/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses set status_code and a default code."""

    status_code: int = 400
    code: str = "auth_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationFailed(AuthError):
    status_code = 400
    code = "validation_error"


class Unauthorized(AuthError):
    status_code = 401
    code = "unauthorized"


class Expired(Unauthorized):
    """A token that was once valid has passed its expiry."""

    code = "token_expired"


class NotFound(AuthError):
    status_code = 404
    code = "not_found"


class Conflict(AuthError):
    status_code = 409
    code = "conflict"


class ServiceUnavailable(AuthError):
    """A downstream dependency (database, mail transport) failed or timed out."""

    status_code = 503
    code = "service_unavailable"


class UpstreamUnavailable(ServiceUnavailable):
    """The OAuth provider could not be reached or answered with a server error."""

    status_code = 502
    code = "upstream_unavailable"
