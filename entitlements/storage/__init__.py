"""
Storage layer for the plan catalog, subscriptions and usage ledgers.

Uses SQLite; every multi-row invariant is enforced by the schema or by a
single conditional statement so that concurrent requests cannot break it.
"""

from entitlements.storage.database import (
    DuplicateSubscriptionError,
    StorageError,
    SubscriptionDatabase,
)

__all__ = ["DuplicateSubscriptionError", "StorageError", "SubscriptionDatabase"]
