"""
Usage policy evaluation for metered capabilities.

One UsagePolicy per meter (transcription minutes, document exports,
summaries). ``validate`` is advisory; ``record`` is the enforcement boundary:
it re-checks the quota at write time and appends the usage entry with a
single conditional insert, so concurrent requests cannot overshoot the plan
allowance.
"""

import logging

from entitlements.billing.subscriptions import EntitlementResolver
from entitlements.config import EntitlementConfig
from entitlements.models.plan import Plan, PlanFeature
from entitlements.models.subscription import Entitlement
from entitlements.models.usage import (
    LimitStatus,
    RecordResult,
    UploadValidation,
    UsageMeter,
    ValidationResult,
)
from entitlements.observability.metrics import track_quota_rejection, track_usage_recorded
from entitlements.storage.database import SubscriptionDatabase

logger = logging.getLogger(__name__)


class EntitlementUnavailableError(Exception):
    """The user has no entitlement, or the plan does not include the feature."""

    pass


class UsagePolicy:
    """
    Quota checks and usage recording for one meter.

    A null plan allowance means unlimited: no ledger query is made.
    """

    def __init__(
        self,
        meter: UsageMeter,
        resolver: EntitlementResolver,
        database: SubscriptionDatabase,
        config: EntitlementConfig,
    ):
        self.meter = meter
        self.resolver = resolver
        self.database = database
        self.config = config

    async def _evaluate(self, user_id: str) -> tuple[LimitStatus, Entitlement]:
        entitlement = await self.resolver.ensure_active_subscription(user_id)
        if not entitlement.is_entitled:
            status = LimitStatus(
                allowed=False,
                message=self.meter.subscribe_message,
                remaining=0,
                plan_limit=0,
                used=0,
            )
            return status, entitlement

        subscription, plan = entitlement
        interval = plan.billing_interval.value if plan.billing_interval else None
        limit = getattr(plan, self.meter.plan_field)

        if limit is None:
            status = LimitStatus(
                allowed=True,
                message=self.meter.unlimited_message,
                remaining=None,
                plan_limit=None,
                used=0,
                billing_interval=interval,
                window_start=subscription.starts_at,
                window_end=subscription.ends_at,
            )
            return status, entitlement

        used = await self.database.sum_usage(
            self.meter.table, user_id, subscription.starts_at, subscription.ends_at
        )
        remaining = max(0, limit - used)
        message = (
            self.meter.remaining_message.format(remaining=remaining)
            if remaining > 0
            else self.meter.exhausted_message.format(limit=limit)
        )
        status = LimitStatus(
            allowed=remaining > 0,
            message=message,
            remaining=remaining,
            plan_limit=limit,
            used=used,
            billing_interval=interval,
            window_start=subscription.starts_at,
            window_end=subscription.ends_at,
        )
        return status, entitlement

    async def check_limit(self, user_id: str) -> LimitStatus:
        """Remaining quota in the user's effective billing window."""
        status, _ = await self._evaluate(user_id)
        return status

    async def validate(self, user_id: str, requested: int) -> ValidationResult:
        """
        Advisory pre-check for ``requested`` units.

        Warns (without rejecting) when the request would consume more than
        the configured share of the remaining quota.
        """
        if requested <= 0:
            raise ValueError("requested quantity must be positive")

        limits, entitlement = await self._evaluate(user_id)
        unit = self.meter.unit

        if not entitlement.is_entitled:
            return ValidationResult(
                allowed=False,
                message=limits.message,
                suggestion=f"Subscribe to a plan to get {unit}",
                limits=limits,
            )

        if limits.remaining is not None and requested > limits.remaining:
            return ValidationResult(
                allowed=False,
                message=f"Requested {requested} {unit} exceeds remaining {unit} ({limits.remaining})",
                suggestion=f"Upgrade your plan for more {unit}",
                limits=limits,
            )

        warning = None
        if limits.remaining is not None and requested > self.config.usage_warning_ratio * limits.remaining:
            share = round(requested / limits.remaining * 100)
            warning = f"This will use {share}% of your remaining {unit}"

        return ValidationResult(
            allowed=True,
            message=f"{requested} {unit} available",
            warning=warning,
            limits=limits,
        )

    async def record(
        self, user_id: str, quantity: int, reference_id: str | None = None
    ) -> RecordResult:
        """
        Record ``quantity`` units if the quota allows it.

        Returns:
            RecordResult: success with freshly recomputed limits, or a
            rejection carrying the current limits
        """
        if quantity <= 0:
            raise ValueError("quantity must be positive")

        limits, entitlement = await self._evaluate(user_id)
        meter_name = self.meter.usage_type.value

        if not entitlement.is_entitled:
            track_quota_rejection(meter_name, "not_entitled")
            return RecordResult(success=False, error=limits.message, updated_limits=limits)

        if not limits.allowed:
            track_quota_rejection(meter_name, "quota_exceeded")
            return RecordResult(success=False, error=limits.message, updated_limits=limits)

        if limits.remaining is not None and quantity > limits.remaining:
            track_quota_rejection(meter_name, "quota_exceeded")
            return RecordResult(
                success=False,
                error=f"You only have {limits.remaining} {self.meter.unit} remaining",
                updated_limits=limits,
            )

        now = self.resolver.clock()
        if limits.plan_limit is None:
            await self.database.record_usage(
                self.meter.table, user_id, quantity, reference_id=reference_id, now=now
            )
        else:
            written = await self.database.record_usage_within_limit(
                self.meter.table,
                user_id,
                quantity,
                limit=limits.plan_limit,
                window_start=limits.window_start,
                window_end=limits.window_end,
                reference_id=reference_id,
                now=now,
            )
            if not written:
                # A concurrent request consumed the quota after our check
                current = await self.check_limit(user_id)
                track_quota_rejection(meter_name, "quota_exceeded")
                logger.info(
                    "Usage write lost quota race",
                    extra={"user_id": user_id, "meter": meter_name, "quantity": quantity},
                )
                return RecordResult(
                    success=False,
                    error=f"You only have {current.remaining} {self.meter.unit} remaining",
                    updated_limits=current,
                )

        track_usage_recorded(meter_name, quantity)
        logger.info(
            "Usage recorded",
            extra={"user_id": user_id, "meter": meter_name, "quantity": quantity},
        )
        updated = await self.check_limit(user_id)
        return RecordResult(success=True, updated_limits=updated)


class PlanAccess:
    """Plan-level gates that are not metered: current plan, features, upload size."""

    def __init__(self, resolver: EntitlementResolver):
        self.resolver = resolver

    async def require_entitlement(self, user_id: str) -> Entitlement:
        """
        Resolve the user's entitlement.

        Raises:
            EntitlementUnavailableError: If the user has no active subscription
        """
        entitlement = await self.resolver.ensure_active_subscription(user_id)
        if not entitlement.is_entitled:
            raise EntitlementUnavailableError("No active subscription")
        return entitlement

    async def require_feature(self, user_id: str, feature: PlanFeature) -> Plan:
        """
        Check that the user's plan includes ``feature``.

        Raises:
            EntitlementUnavailableError: If it does not
        """
        _, plan = await self.require_entitlement(user_id)
        if not plan.has_feature(feature):
            raise EntitlementUnavailableError(
                f"Your {plan.name} plan does not include {feature.value.replace('_', ' ')}"
            )
        return plan

    async def validate_upload(self, user_id: str, size_mb: float) -> UploadValidation:
        """Check a file size against the plan's upload limit."""
        entitlement = await self.resolver.ensure_active_subscription(user_id)
        if not entitlement.is_entitled:
            return UploadValidation(
                allowed=False, message="Subscribe to upload files", size_mb=size_mb
            )

        plan = entitlement.plan
        if size_mb > plan.upload_limit_mb:
            return UploadValidation(
                allowed=False,
                message=(
                    f"File is {size_mb:g} MB; your {plan.name} plan allows up to "
                    f"{plan.upload_limit_mb} MB"
                ),
                size_mb=size_mb,
                upload_limit_mb=plan.upload_limit_mb,
                plan_name=plan.name,
            )

        return UploadValidation(
            allowed=True,
            message="File size is within your plan limit",
            size_mb=size_mb,
            upload_limit_mb=plan.upload_limit_mb,
            plan_name=plan.name,
        )
