"""
Entitlements - subscription reconciliation and quota enforcement.

Resolves the effective plan for a user from the local subscription store,
reconciling with Paddle when the stored billing window has lapsed, and
enforces metered allowances (transcription minutes, document exports,
summaries) against append-only usage ledgers.

Example:
    >>> from entitlements import get_settings
    >>> settings = get_settings()
    >>> print(settings.entitlement.free_plan_name)
"""

from entitlements.config import get_settings

__all__ = ["get_settings"]
