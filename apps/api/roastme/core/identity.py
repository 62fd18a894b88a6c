"""
Identity tokens for account linking

The OAuth callback signs the verified e-mail (and Google subject) with the
shared `identity_token_secret`; the API only links a session to an account
when it is handed such a token.

Token: base64url(json payload) "." base64url(HMAC-SHA256(secret, payload part))
"""

import base64
import hashlib
import hmac
import json
import time
from typing import Optional

from pydantic import BaseModel

from roastme.core.config import settings
from roastme.core.errors import IdentityError


class VerifiedIdentity(BaseModel):
    email: str
    google_id: Optional[str] = None
    exp: int


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _signature(secret: str, payload_part: str) -> str:
    digest = hmac.new(secret.encode(), payload_part.encode(), hashlib.sha256).digest()
    return _b64encode(digest)


def sign_identity_token(
    email: str,
    google_id: Optional[str] = None,
    expires_in: int = 600,
    secret: Optional[str] = None,
) -> str:
    secret = secret or settings.identity_token_secret
    if not secret:
        raise IdentityError("Identity tokens are not configured")

    payload = {"email": email.strip().lower(), "exp": int(time.time()) + expires_in}
    if google_id:
        payload["google_id"] = google_id
    payload_part = _b64encode(json.dumps(payload, separators=(",", ":")).encode())
    return f"{payload_part}.{_signature(secret, payload_part)}"


def verify_identity_token(
    token: str, secret: Optional[str] = None, now: Optional[float] = None
) -> VerifiedIdentity:
    """Raises IdentityError unless the token is well-formed, signed and unexpired"""
    secret = secret or settings.identity_token_secret
    if not secret:
        raise IdentityError("Identity tokens are not configured")

    try:
        payload_part, signature = token.split(".")
    except ValueError:
        raise IdentityError("Malformed identity token")

    if not hmac.compare_digest(signature, _signature(secret, payload_part)):
        raise IdentityError("Identity token signature mismatch")

    try:
        identity = VerifiedIdentity.model_validate_json(_b64decode(payload_part))
    except ValueError:
        raise IdentityError("Malformed identity token")

    now = time.time() if now is None else now
    if identity.exp + settings.identity_token_tolerance < now:
        raise IdentityError("Identity token expired")

    identity.email = identity.email.strip().lower()
    return identity
