"""
auth/totp.py -- Time-based one-time passwords for the second factor.

Thin wrapper over pyotp (RFC 6238: SHA-1, 6 digits, 30-second step). The
algorithm lives in the library; this module only fixes the parameters.

Clock skew: verify_code() accepts the current step and one step either side
(valid_window=1), i.e. a code is good for roughly 90 seconds around its
window. Authenticator apps on phones drift; one step is the usual tolerance.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import re
from datetime import datetime

import pyotp

_CODE_RE = re.compile(r"^\d{6}$")


def generate_secret() -> str:
    """Return a new random base32 secret (160 bits)."""
    return pyotp.random_base32(32)


def provisioning_uri(secret: str, email: str, issuer: str) -> str:
    """Return the otpauth:// URI an authenticator app enrolls from (the QR code payload)."""
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def current_code(secret: str, at: datetime | None = None) -> str:
    totp = pyotp.TOTP(secret)
    return totp.at(at) if at is not None else totp.now()


def verify_code(secret: str, code: str, at: datetime | None = None) -> bool:
    """Return True if code matches the secret at time `at` (default: now) within one step."""
    code = (code or "").strip()
    if not _CODE_RE.match(code):
        return False
    return pyotp.TOTP(secret).verify(code, for_time=at, valid_window=1)
