"""
Authentication for the entitlements API.

Security:
- Bearer session tokens signed by the external auth layer
- user_id injection from the validated token (prevents spoofing)
"""

from entitlements.auth.dependencies import (
    get_authenticated_user_id,
    get_services,
)

__all__ = [
    "get_authenticated_user_id",
    "get_services",
]
