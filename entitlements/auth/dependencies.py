"""
FastAPI dependencies for authentication.

Security:
- Session token validation (HMAC, constant-time comparison)
- user_id injection from the validated token (prevents spoofing)
- Rate limiting per user (see rate_limits.get_user_id_for_rate_limit)

Performance:
- Verified tokens cached in-memory (TTL) by SessionTokenVerifier
"""

import logging
from typing import TYPE_CHECKING, Optional

from fastapi import Header, HTTPException, Request, status

from entitlements.auth.tokens import InvalidSessionTokenError
from entitlements.observability.logging import set_user_id

if TYPE_CHECKING:
    from entitlements.services import EntitlementServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> "EntitlementServices":
    """Service container created by the application lifespan."""
    return request.app.state.services


async def get_authenticated_user_id(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """
    Validate the bearer session token and return the authenticated user id.

    Args:
        request: FastAPI request (for attaching user context)
        authorization: Authorization header ("Bearer <session token>")

    Returns:
        str: Authenticated user id

    Raises:
        HTTPException 401: Missing, malformed, forged or expired token
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication. Provide a session token via the Authorization header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Use: 'Bearer {token}'",
            headers={"WWW-Authenticate": "Bearer"},
        )

    services = get_services(request)
    try:
        user_id = services.tokens.verify(parts[1])
    except InvalidSessionTokenError as e:
        logger.warning(f"Session token rejected: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    # Attach user to request state (rate limiting and logging context)
    request.state.user_id = user_id
    set_user_id(user_id)
    return user_id

