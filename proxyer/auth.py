"""
Rotating shared-secret credentials.

A token is the hex SHA-256 of "<hour>#<secret>#<uri>", where hour is the UTC
hour bucket (0-23). There is no nonce and no binding to a TCP connection: a
captured token for a given uri stays valid for the rest of its hour, and the
verifier below also accepts the adjacent buckets, matching the window the
Tunnel Endpoint accepts.
"""
from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Optional

AUTH_HEADER_NAME = "x-proxyer-proxy-auth"
DEST_HEADER_NAME = "x-proxyer-proxy-dest"
REAL_HOST_HEADER_NAME = "x-proxyer-real-host"

HASH_LENGTH = 64


def _utc_hour(now: Optional[datetime] = None) -> int:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.hour


def make_auth_with_hour(uri: str, hour: int, secret: str) -> str:
    return hashlib.sha256(f"{hour}#{secret}#{uri}".encode("utf-8")).hexdigest()


def make_auth(uri: str, secret: str, now: Optional[datetime] = None) -> str:
    return make_auth_with_hour(uri, _utc_hour(now), secret)


def verify_auth(token: str, uri: str, secret: str, now: Optional[datetime] = None) -> bool:
    """Accept tokens from the previous, current or next UTC hour bucket."""
    if len(token) != HASH_LENGTH:
        return False
    # compare_digest only takes ASCII str, so compare bytes
    token_b = token.encode("utf-8", "surrogatepass")
    hour = _utc_hour(now)
    for offset in (23, 24, 25):
        expected = make_auth_with_hour(uri, (hour + offset) % 24, secret)
        if hmac.compare_digest(expected.encode("ascii"), token_b):
            return True
    return False


class AuthTokenGenerator:
    """Binds the shared secret so callers only pass the uri (and optionally the hour)."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def generate(self, uri: str, hour: int) -> str:
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be in [0, 23], got {hour}")
        return make_auth_with_hour(uri, hour, self._secret)

    def current(self, uri: str, now: Optional[datetime] = None) -> str:
        return make_auth(uri, self._secret, now)

    def verify(self, token: str, uri: str, now: Optional[datetime] = None) -> bool:
        return verify_auth(token, uri, self._secret, now)
