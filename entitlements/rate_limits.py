"""
Per-user rate limiting for usage and billing mutations.

Uses slowapi with in-memory storage. Authenticated requests are keyed by
user id (attached by the auth dependency); anything else by client address.
"""

import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from entitlements.config import get_settings

logger = logging.getLogger(__name__)


def get_user_id_for_rate_limit(request: Request) -> str:
    """
    Extract user_id for rate limiting.

    Falls back to IP address if not authenticated.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


def record_rate_limit() -> str:
    """Limit string for record and billing endpoints (e.g. "30/minute")."""
    return get_settings().service.record_rate_limit


limiter = Limiter(key_func=get_user_id_for_rate_limit)
