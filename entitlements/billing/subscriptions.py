"""
Entitlement resolution.

Determines a user's effective (subscription, plan) on every entitlement
check. The local row is authoritative while its billing window is current;
a lapsed window triggers a lazy pull from Paddle (paid plans) or a local
roll-forward (Free plan). Users with no active row are provisioned onto the
Free plan exactly once, even under concurrent first use.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from entitlements.billing.paddle_client import PaddleClient, PaddleNotFoundError
from entitlements.config import EntitlementConfig
from entitlements.models.paddle import PaddleSubscription
from entitlements.models.plan import Plan
from entitlements.models.subscription import (
    Entitlement,
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
)
from entitlements.observability.metrics import track_entitlement_resolution
from entitlements.storage.database import DuplicateSubscriptionError, SubscriptionDatabase
from entitlements.utils.periods import current_month_window, is_current_window, utcnow

logger = logging.getLogger(__name__)

# Remote statuses that still grant access even when the reported window has lapsed
CURRENT_PADDLE_STATUSES = frozenset({"active", "trialing"})


class EntitlementResolver:
    """
    Resolves the effective subscription and plan for a user.

    Failure semantics:
    - Storage errors propagate
    - Paddle errors propagate (fail closed), except "not found" which means
      the remote subscription is gone and the user falls back to Free
    """

    def __init__(
        self,
        database: SubscriptionDatabase,
        paddle: PaddleClient,
        config: EntitlementConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize resolver.

        Args:
            database: Subscription store
            paddle: Paddle API client used for lapsed paid subscriptions
            config: Entitlement configuration (Free plan name)
            clock: Source of "now" (injectable for tests)
        """
        self.database = database
        self.paddle = paddle
        self.config = config
        self.clock = clock

    async def ensure_active_subscription(self, user_id: str) -> Entitlement:
        """
        Resolve the user's effective entitlement.

        Returns:
            Entitlement: (subscription, plan); both None only if the Free
            plan is not seeded

        Raises:
            StorageError: If the row store fails
            PaddleError: If reconciling a lapsed paid subscription fails
                for any reason other than "not found"
        """
        now = self.clock()
        existing = await self.database.get_latest_active_subscription(user_id)

        if existing is not None:
            subscription, plan = existing

            if subscription.is_current(now):
                track_entitlement_resolution("current")
                return Entitlement(subscription, plan)

            if plan.name == self.config.free_plan_name or subscription.is_locally_managed:
                refreshed = await self._roll_free_window(subscription, now)
                track_entitlement_resolution("free_rolled")
                return Entitlement(refreshed, plan)

            reconciled = await self._reconcile_paid(subscription, plan, now)
            if reconciled.is_entitled:
                track_entitlement_resolution("reconciled")
                return reconciled
            track_entitlement_resolution("lapsed")

        return await self._provision_free(user_id, now)

    async def _roll_free_window(self, subscription: Subscription, now: datetime) -> Subscription:
        """Move a lapsed Free row to the calendar month containing ``now``."""
        starts_at, ends_at = current_month_window(now)
        refreshed = await self.database.update_subscription(
            subscription.id,
            {
                "status": SubscriptionStatus.ACTIVE,
                "starts_at": starts_at,
                "ends_at": ends_at,
                "auto_renew": False,
                "cancel_at": None,
            },
            now=now,
        )
        logger.info(
            "Rolled Free subscription window forward",
            extra={"user_id": subscription.user_id, "subscription_id": subscription.id},
        )
        if refreshed is None:
            # Row vanished between read and write; report the intended state
            return subscription.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "starts_at": starts_at,
                    "ends_at": ends_at,
                    "auto_renew": False,
                    "cancel_at": None,
                }
            )
        return refreshed

    async def _reconcile_paid(
        self, subscription: Subscription, plan: Plan, now: datetime
    ) -> Entitlement:
        """
        Pull a lapsed paid subscription from Paddle and project it locally.

        Returns:
            Entitlement with the refreshed row, or (None, None) when the
            remote subscription no longer grants access
        """
        paddle_id = subscription.paddle_subscription_id
        try:
            remote = await self.paddle.get_subscription(paddle_id)
        except PaddleNotFoundError:
            logger.warning(
                "Paddle subscription not found during reconciliation",
                extra={"user_id": subscription.user_id, "paddle_subscription_id": paddle_id},
            )
            await self._mark_inactive(
                subscription,
                SubscriptionStatus.CANCELED,
                ends_at=subscription.ends_at or now,
                cancel_at=subscription.cancel_at or subscription.ends_at or now,
                now=now,
            )
            return Entitlement(None, None)

        remote_starts = remote.period_starts_at or subscription.starts_at
        remote_ends = remote.renewal_at or subscription.ends_at
        scheduled_change_at = remote.scheduled_change_at
        has_current_access = is_current_window(remote_starts, remote_ends, now)

        if has_current_access or remote.status in CURRENT_PADDLE_STATUSES:
            next_plan = await self._resolve_remote_plan(remote) or plan
            refreshed = await self.database.update_subscription(
                subscription.id,
                {
                    "plan_id": next_plan.id,
                    "status": SubscriptionStatus.ACTIVE,
                    "starts_at": remote_starts,
                    "ends_at": remote_ends,
                    "auto_renew": False if scheduled_change_at else remote.status != "canceled",
                    "cancel_at": scheduled_change_at,
                },
                now=now,
            )
            logger.info(
                "Reconciled subscription with Paddle",
                extra={
                    "user_id": subscription.user_id,
                    "paddle_subscription_id": paddle_id,
                    "remote_status": remote.status,
                    "plan": next_plan.name,
                },
            )
            if refreshed is None:
                return Entitlement(None, None)
            return Entitlement(refreshed, next_plan)

        status = (
            SubscriptionStatus.PAUSED if remote.status == "paused" else SubscriptionStatus.CANCELED
        )
        await self._mark_inactive(
            subscription,
            status,
            ends_at=remote_ends or now,
            cancel_at=scheduled_change_at or remote_ends or now,
            now=now,
        )
        logger.info(
            "Paid subscription lapsed",
            extra={
                "user_id": subscription.user_id,
                "paddle_subscription_id": paddle_id,
                "remote_status": remote.status,
            },
        )
        return Entitlement(None, None)

    async def _resolve_remote_plan(self, remote: PaddleSubscription) -> Plan | None:
        price_id = remote.price_id
        if not price_id:
            return None
        return await self.database.get_plan_by_price_id(price_id)

    async def _mark_inactive(
        self,
        subscription: Subscription,
        status: SubscriptionStatus,
        ends_at: datetime,
        cancel_at: datetime,
        now: datetime,
    ) -> None:
        await self.database.update_subscription(
            subscription.id,
            {
                "status": status,
                "auto_renew": False,
                "ends_at": ends_at,
                "cancel_at": cancel_at,
            },
            now=now,
        )

    async def _provision_free(self, user_id: str, now: datetime) -> Entitlement:
        """Insert the user's Free subscription, tolerating a concurrent insert."""
        free_plan = await self.database.get_plan_by_name(self.config.free_plan_name)
        if free_plan is None:
            logger.error(
                "Free plan is not seeded - cannot provision entitlement",
                extra={"user_id": user_id, "plan_name": self.config.free_plan_name},
            )
            track_entitlement_resolution("unseeded")
            return Entitlement(None, None)

        starts_at, ends_at = current_month_window(now)
        try:
            subscription = await self.database.insert_subscription(
                SubscriptionCreate(
                    user_id=user_id,
                    plan_id=free_plan.id,
                    status=SubscriptionStatus.ACTIVE,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    auto_renew=False,
                ),
                now=now,
            )
        except DuplicateSubscriptionError:
            existing = await self.database.get_latest_active_subscription(user_id)
            if existing is None:
                raise
            track_entitlement_resolution("provision_race")
            return Entitlement(*existing)

        logger.info(
            "Provisioned Free subscription",
            extra={"user_id": user_id, "subscription_id": subscription.id},
        )
        track_entitlement_resolution("provisioned")
        return Entitlement(subscription, free_plan)
