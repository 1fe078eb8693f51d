"""
User-initiated billing operations.

Each operation follows the same two-phase pattern: mutate the authoritative
subscription in Paddle first, then project the parts of the response needed
to keep the local row usable until the next webhook arrives. A failed Paddle
call aborts before any local write. A Paddle success followed by a local
write failure is not rolled back remotely; the next webhook or reconciliation
heals the row.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel

from entitlements.billing.paddle_client import PaddleClient, PaddleError
from entitlements.billing.subscriptions import EntitlementResolver
from entitlements.config import EntitlementConfig, PaddleConfig
from entitlements.models.paddle import PaddleSubscription
from entitlements.models.plan import Plan
from entitlements.models.subscription import ProrationMode, Subscription
from entitlements.storage.database import SubscriptionDatabase
from entitlements.utils.periods import utcnow

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Base exception for billing operation errors."""

    pass


class SubscriptionNotFoundError(SubscriptionError):
    """The user has no Paddle-backed subscription to operate on."""

    pass


class SubscriptionConflictError(SubscriptionError):
    """The subscription's status does not allow the operation."""

    pass


class InvalidPlanChangeError(SubscriptionError):
    """The requested target plan cannot be resolved to a Paddle price."""

    pass


class AutoRenewState(BaseModel):
    auto_renew: bool
    status: str
    renews_at: datetime | None = None
    cancel_at: datetime | None = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "AutoRenewState":
        return cls(
            auto_renew=subscription.auto_renew,
            status=subscription.status.value,
            renews_at=subscription.ends_at,
            cancel_at=subscription.cancel_at,
        )

    def as_response(self) -> dict:
        return {
            "autoRenew": self.auto_renew,
            "status": self.status,
            "renewsAt": self.renews_at.isoformat() if self.renews_at else None,
            "cancelAt": self.cancel_at.isoformat() if self.cancel_at else None,
        }


class PlanChangeResult(BaseModel):
    subscription_id: str
    proration: ProrationMode
    plan_id: str | None = None
    paddle_price_id: str
    applied_locally: bool
    paddle: dict | None = None

    def as_response(self) -> dict:
        return {
            "success": True,
            "subscriptionId": self.subscription_id,
            "proration": self.proration.value,
            "planId": self.plan_id,
            "paddlePriceId": self.paddle_price_id,
            "appliedLocally": self.applied_locally,
            "paddle": self.paddle,
        }


class SubscriptionManager:
    """
    Auto-renew toggle, plan change and payment-method session.

    All three require the user's latest subscription to be Paddle-backed and
    in a manageable status; otherwise they fail before any remote call.
    """

    def __init__(
        self,
        database: SubscriptionDatabase,
        paddle: PaddleClient,
        resolver: EntitlementResolver,
        entitlement_config: EntitlementConfig,
        paddle_config: PaddleConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.paddle = paddle
        self.resolver = resolver
        self.entitlement_config = entitlement_config
        self.paddle_config = paddle_config
        self.clock = clock

    async def _manageable_subscription(self, user_id: str) -> Subscription:
        """
        Get the user's latest Paddle-backed subscription in a manageable status.

        Locally managed rows are never candidates.

        Raises:
            SubscriptionNotFoundError: The user has no Paddle-backed row
            SubscriptionConflictError: The row's status forbids changes
        """
        subscription = await self.database.get_latest_paddle_subscription(user_id)
        if subscription is None:
            raise SubscriptionNotFoundError("No active subscription to update")

        if subscription.status.value not in self.entitlement_config.manageable_status_set:
            raise SubscriptionConflictError(
                f"Subscription is {subscription.status.value} and cannot be changed"
            )
        return subscription

    # ------------------------------------------------------------------
    # Auto-renew
    # ------------------------------------------------------------------

    async def get_auto_renew(self, user_id: str) -> AutoRenewState:
        subscription = await self._manageable_subscription(user_id)
        return AutoRenewState.from_subscription(subscription)

    async def set_auto_renew(self, user_id: str, desired: bool) -> AutoRenewState:
        """
        Enable or disable renewal at the end of the current period.

        Requesting the current state makes no Paddle call.

        Raises:
            SubscriptionNotFoundError, SubscriptionConflictError: As above
            PaddleError: If Paddle rejects the change (nothing written locally)
        """
        await self.resolver.ensure_active_subscription(user_id)
        subscription = await self._manageable_subscription(user_id)
        if subscription.auto_renew == desired:
            return AutoRenewState.from_subscription(subscription)

        paddle_id = subscription.paddle_subscription_id
        if desired:
            remote = await self.paddle.clear_scheduled_change(paddle_id)
            cancel_at = None
        else:
            remote = await self.paddle.cancel_subscription(
                paddle_id, effective_from="next_billing_period"
            )
            cancel_at = self._scheduled_cancel_at(remote, subscription)

        renews_at = (remote.renewal_at if remote else None) or subscription.ends_at
        updated = await self.database.update_subscription(
            subscription.id,
            {"auto_renew": desired, "ends_at": renews_at, "cancel_at": cancel_at},
            now=self.clock(),
        )
        logger.info(
            "Auto-renew updated",
            extra={
                "user_id": user_id,
                "paddle_subscription_id": paddle_id,
                "auto_renew": desired,
            },
        )
        return AutoRenewState.from_subscription(updated or subscription)

    @staticmethod
    def _scheduled_cancel_at(
        remote: PaddleSubscription | None, subscription: Subscription
    ) -> datetime | None:
        if remote is not None:
            for candidate in (remote.scheduled_change_at, remote.renewal_at):
                if candidate is not None:
                    return candidate
        return subscription.ends_at

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def _resolve_target(
        self, plan_id: str | None, paddle_price_id: str | None
    ) -> tuple[str, Plan | None]:
        """Resolve the requested plan to (Paddle price id, local plan)."""
        if paddle_price_id:
            return paddle_price_id, await self.database.get_plan_by_price_id(paddle_price_id)

        if plan_id:
            plan = await self.database.get_plan(plan_id)
            if plan is None:
                raise InvalidPlanChangeError(f"Unknown plan: {plan_id}")
            if not plan.paddle_price_id:
                raise InvalidPlanChangeError(f"Plan {plan.name} cannot be purchased")
            return plan.paddle_price_id, plan

        raise InvalidPlanChangeError("Missing target plan or paddlePriceId")

    async def change_plan(
        self,
        user_id: str,
        plan_id: str | None = None,
        paddle_price_id: str | None = None,
        proration: ProrationMode = ProrationMode.IMMEDIATE,
        quantity: int = 1,
    ) -> PlanChangeResult:
        """
        Move the user's subscription to another plan.

        ``immediate`` updates the items now with prorated billing and updates
        the local plan optimistically; ``next_billing_period`` schedules the
        change at renewal and leaves the local row for the webhook to update.
        """
        if quantity < 1:
            raise InvalidPlanChangeError("quantity must be at least 1")

        # Heal a lapsed row before amending it
        await self.resolver.ensure_active_subscription(user_id)
        subscription = await self._manageable_subscription(user_id)
        price_id, target_plan = await self._resolve_target(plan_id, paddle_price_id)
        paddle_id = subscription.paddle_subscription_id

        if proration == ProrationMode.NEXT_BILLING_PERIOD:
            remote = await self.paddle.schedule_change(paddle_id, price_id, quantity)
        else:
            remote = await self.paddle.change_price(paddle_id, price_id, quantity)

        applied_locally = False
        if proration == ProrationMode.IMMEDIATE and target_plan is not None:
            await self.database.update_subscription(
                subscription.id,
                {
                    "plan_id": target_plan.id,
                    "starts_at": (remote.period_starts_at if remote else None)
                    or subscription.starts_at,
                    "ends_at": (remote.period_ends_at if remote else None) or subscription.ends_at,
                },
                now=self.clock(),
            )
            applied_locally = True

        logger.info(
            "Plan change submitted",
            extra={
                "user_id": user_id,
                "paddle_subscription_id": paddle_id,
                "paddle_price_id": price_id,
                "proration": proration.value,
            },
        )
        return PlanChangeResult(
            subscription_id=subscription.id,
            proration=proration,
            plan_id=target_plan.id if target_plan else None,
            paddle_price_id=price_id,
            applied_locally=applied_locally,
            paddle=remote.model_dump(mode="json", exclude_none=True) if remote else None,
        )

    # ------------------------------------------------------------------
    # Payment method
    # ------------------------------------------------------------------

    async def create_payment_method_session(self, user_id: str, return_url: str) -> str:
        """
        Get a Paddle-hosted URL where the user can update their card.

        Preference: static portal URL, then a billing-portal session, then
        an update-payment-method link. No local state changes.

        Raises:
            PaddleError: If Paddle returns no usable URL
        """
        subscription = await self._manageable_subscription(user_id)

        if self.paddle_config.customer_portal_url:
            return self.paddle_config.customer_portal_url

        paddle_id = subscription.paddle_subscription_id
        remote = await self.paddle.get_subscription(paddle_id)
        customer_id = remote.resolved_customer_id
        if not customer_id:
            raise PaddleError("Paddle subscription is missing customer_id")

        url = None
        try:
            url = await self.paddle.create_portal_session(customer_id, return_url)
        except PaddleError as e:
            logger.warning(
                "Billing portal session failed, falling back to update-payment-method link",
                extra={"user_id": user_id, "paddle_subscription_id": paddle_id, "error": str(e)},
            )

        if not url:
            url = await self.paddle.create_update_payment_method_link(paddle_id, return_url)

        if not url:
            raise PaddleError("Paddle did not return a billing portal or update URL")
        return url
