import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header

from advisorbook.config import env_flag, env_int
from advisorbook.services.errors import AuthenticationRequiredError, UnauthorizedError

# Tokens are minted by the customer-facing app with the shared secret as
# ``b64url("user_id|expiry_ts") + "." + b64url(hmac_sha256(payload))``.
# This service only checks them against the caller id sent with each request.
TOKEN_TTL_HOURS = env_int("AUTH_TOKEN_TTL_HOURS", 24, minimum=1)
AUTH_REQUIRED = env_flag("AUTH_REQUIRED", False)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def sign_payload(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def verify_access_token(token: str) -> Optional[str]:
    """Return the token's user id, or ``None`` for a forged, expired or over-long token.

    A token whose expiry lies further ahead than ``AUTH_TOKEN_TTL_HOURS`` was
    not issued under the current policy and is refused as well.
    """
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        user_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        expires_at = datetime.fromtimestamp(int(expiry_ts), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    if not user_id or not hmac.compare_digest(sent_sig, sign_payload(payload)):
        return None
    now = datetime.now(timezone.utc)
    if expires_at < now or expires_at > now + timedelta(hours=TOKEN_TTL_HOURS):
        return None
    return user_id


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_user(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def assert_caller_authorized(
    caller_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    token_user = resolve_request_user(authorization)
    if not token_user:
        if AUTH_REQUIRED:
            raise AuthenticationRequiredError("Authentication required")
        return
    if token_user != caller_id:
        raise UnauthorizedError("Token user does not match caller")
