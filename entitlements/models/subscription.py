"""
Subscription models.

A subscription binds a user to exactly one plan for a billing window. Rows
are never hard-deleted: expiry and cancellation are status transitions.
"""

from datetime import datetime
from enum import Enum
from typing import NamedTuple

from pydantic import BaseModel, Field

from entitlements.models.plan import Plan
from entitlements.utils.periods import is_current_window


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAUSED = "paused"
    CANCELED = "canceled"


class ProrationMode(str, Enum):
    """When a plan change takes effect."""

    IMMEDIATE = "immediate"
    NEXT_BILLING_PERIOD = "next_billing_period"


class Subscription(BaseModel):
    """
    Mutable entitlement record.

    ``paddle_subscription_id`` is None for locally-managed Free subscriptions
    that have no remote counterpart.
    """

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus
    starts_at: datetime
    ends_at: datetime | None = None
    auto_renew: bool = False
    cancel_at: datetime | None = None
    paddle_subscription_id: str | None = None
    paddle_transaction_id: str | None = None
    last_event_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_locally_managed(self) -> bool:
        return self.paddle_subscription_id is None

    def is_current(self, now: datetime) -> bool:
        """Check whether the billing window contains ``now``."""
        return is_current_window(self.starts_at, self.ends_at, now)


class SubscriptionCreate(BaseModel):
    """Schema for inserting a subscription row."""

    user_id: str = Field(..., min_length=1)
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    starts_at: datetime
    ends_at: datetime | None = None
    auto_renew: bool = False
    cancel_at: datetime | None = None
    paddle_subscription_id: str | None = None
    paddle_transaction_id: str | None = None
    last_event_at: datetime | None = None


class Entitlement(NamedTuple):
    """
    Effective (subscription, plan) pair for a user.

    Both are None only when the Free plan is not seeded.
    """

    subscription: Subscription | None
    plan: Plan | None

    @property
    def is_entitled(self) -> bool:
        return self.subscription is not None and self.plan is not None
