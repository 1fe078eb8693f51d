"""
Session token verification.

Tokens are issued by the external authentication layer and signed with the
shared session secret:

    <user_id>.<expires_unix>.<hex hmac-sha256 of "<user_id>.<expires_unix>">

Verification is constant-time; successful results are cached (TTL) so a
token is only re-verified after the cache entry expires.
"""

import hashlib
import hmac
import logging
import time

from cachetools import TTLCache

logger = logging.getLogger(__name__)


class InvalidSessionTokenError(Exception):
    """Token is malformed, forged or expired."""

    pass


class SessionTokenVerifier:
    """Verifies bearer session tokens and returns the authenticated user id."""

    def __init__(self, secret: str, cache_ttl_seconds: int = 300, cache_size: int = 10_000):
        self._secret = secret.encode("utf-8")
        self._cache: TTLCache | None = (
            TTLCache(maxsize=cache_size, ttl=cache_ttl_seconds) if cache_ttl_seconds > 0 else None
        )

    def _sign(self, user_id: str, expires_at: int) -> str:
        message = f"{user_id}.{expires_at}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def issue(self, user_id: str, ttl_seconds: int = 3600, now: float | None = None) -> str:
        """Create a token for ``user_id`` (used by the auth layer and in tests)."""
        if not user_id:
            raise ValueError("user_id is required")
        expires_at = int((now if now is not None else time.time()) + ttl_seconds)
        return f"{user_id}.{expires_at}.{self._sign(user_id, expires_at)}"

    def verify(self, token: str, now: float | None = None) -> str:
        """
        Verify a session token.

        Returns:
            str: Authenticated user id

        Raises:
            InvalidSessionTokenError: If the token is malformed, forged or expired
        """
        current = now if now is not None else time.time()

        if self._cache is not None:
            cached = self._cache.get(token)
            if cached is not None:
                user_id, expires_at = cached
                if current < expires_at:
                    return user_id
                del self._cache[token]

        if not self._secret:
            raise InvalidSessionTokenError("Session secret not configured")

        parts = token.rsplit(".", 2)
        if len(parts) != 3 or not parts[0]:
            raise InvalidSessionTokenError("Malformed session token")

        user_id, expires_raw, signature = parts
        try:
            expires_at = int(expires_raw)
        except ValueError as e:
            raise InvalidSessionTokenError("Malformed session token") from e

        if not hmac.compare_digest(signature, self._sign(user_id, expires_at)):
            raise InvalidSessionTokenError("Invalid session token signature")

        if current >= expires_at:
            raise InvalidSessionTokenError("Session token expired")

        if self._cache is not None:
            self._cache[token] = (user_id, expires_at)
        return user_id
