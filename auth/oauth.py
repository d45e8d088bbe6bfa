"""
auth/oauth.py -- Google OAuth bridge (authorization code -> verified identity).

The browser runs Google's consent screen itself and posts the resulting
authorization code to POST /auth/google. GoogleOAuthBridge.exchange() then:
  1. Redeems the code at Google's token endpoint (authlib OAuth2Session,
     which rides on requests -- every call carries a bounded timeout).
  2. Reads the OpenID Connect userinfo endpoint with the new access token.
  3. Returns an OAuthIdentity(email, name, subject).

The service depends on the IdentityProvider protocol rather than on this
class, so tests substitute a fake and another provider can be slotted in.

Security notes:
  [H1] Email verification is mandatory. exchange() raises Unauthorized if
       Google does not confirm the email is verified -- an unverified address
       could belong to someone else, and OAuth sign-in activates accounts.

Failure mapping:
  Google rejects the code (invalid_grant, bad client) -> Unauthorized
  Network error, timeout, 5xx                         -> UpstreamUnavailable (502)

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import Unauthorized, UpstreamUnavailable
from auth.models import OAuthIdentity

logger = logging.getLogger("authstarter.auth.oauth")

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"


class IdentityProvider(Protocol):
    def exchange(self, code: str) -> OAuthIdentity: ...


class GoogleOAuthBridge:
    """Exchange a Google authorization code for a verified identity.

    Usage:
        bridge = GoogleOAuthBridge(client_id, client_secret)
        identity = bridge.exchange(code)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str = "postmessage",
        timeout_seconds: int = 10,
        session_factory=OAuth2Session,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        # "postmessage" is what Google's JS popup flow uses as redirect_uri
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self._session_factory = session_factory

    def exchange(self, code: str) -> OAuthIdentity:
        session = self._session_factory(
            self.client_id,
            self.client_secret,
            redirect_uri=self.redirect_uri,
            scope="openid email profile",
        )
        try:
            session.fetch_token(
                GOOGLE_TOKEN_URL,
                grant_type="authorization_code",
                code=code,
                timeout=self.timeout_seconds,
            )
            resp = session.get(GOOGLE_USERINFO_URL, timeout=self.timeout_seconds)
            resp.raise_for_status()
            userinfo = resp.json()
        except OAuthError as exc:
            logger.warning("Google rejected authorization code: %s", exc.error)
            raise Unauthorized("Google sign-in failed. Please try again.", code="oauth_rejected") from exc
        except requests.RequestException as exc:
            logger.exception("Google OAuth exchange failed")
            raise UpstreamUnavailable("Google sign-in is temporarily unavailable.") from exc
        finally:
            session.close()
        return identity_from_userinfo(userinfo)


def identity_from_userinfo(userinfo: dict) -> OAuthIdentity:
    """Normalize an OIDC userinfo document into an OAuthIdentity.

    [H1] The email claim is only accepted when email_verified is True.
    Some providers omit email_verified entirely -- treated as unverified.
    """
    if not userinfo.get("email_verified", False):
        raise Unauthorized("Google account email is not verified.", code="oauth_unverified_email")

    email = userinfo.get("email")
    subject = userinfo.get("sub")
    if not email or not subject:
        raise Unauthorized("Google sign-in returned an incomplete profile.", code="oauth_rejected")

    name = userinfo.get("name") or email.split("@", 1)[0]
    return OAuthIdentity(email=email.strip().lower(), name=name, subject=str(subject))
