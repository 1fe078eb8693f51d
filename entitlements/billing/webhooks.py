"""
Paddle webhook event handlers.

Handles Paddle notifications keyed by Paddle subscription id:
- subscription.created / subscription.activated
- subscription.updated
- payment.succeeded / transaction.completed
- subscription.canceled / subscription.paused / subscription.resumed

Every write is an idempotent upsert or conditional update, so redelivery of
the same event never creates a second row. Events older than the last one
applied to a row are acknowledged and skipped. Unmodelled event types are
acknowledged too, so Paddle never retries them.
"""

import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from pydantic import BaseModel, ValidationError

from entitlements.billing.signature import verify_paddle_signature
from entitlements.config import ConfigurationError, PaddleConfig
from entitlements.models.paddle import PaddleEvent, PaddleSubscription
from entitlements.models.subscription import SubscriptionCreate, SubscriptionStatus
from entitlements.observability.metrics import track_webhook_event
from entitlements.storage.database import SubscriptionDatabase
from entitlements.utils.periods import add_one_month, utcnow

logger = logging.getLogger(__name__)

STATUS_EVENTS: dict[str, tuple[SubscriptionStatus, bool]] = {
    "subscription.canceled": (SubscriptionStatus.CANCELED, False),
    "subscription.paused": (SubscriptionStatus.PAUSED, False),
    "subscription.resumed": (SubscriptionStatus.ACTIVE, True),
}

# Paddle statuses mapped onto local ones; anything else (past_due, trialing)
# keeps access and is stored as active.
REMOTE_STATUS_MAP = {
    "canceled": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAUSED,
}


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    pass


class WebhookSignatureError(WebhookError):
    """Paddle-Signature verification failed."""

    pass


class WebhookPayloadError(WebhookError):
    """The body is not a usable Paddle event."""

    pass


class WebhookOutcome(BaseModel):
    """
    Result of handling one delivery.

    ``result`` is one of: applied, stale, unchanged, skipped, ignored.
    """

    event_type: str
    event_id: str | None = None
    result: str
    subscription_id: str | None = None


class PaddleWebhookHandler:
    """
    Handle Paddle webhook events.

    Verification happens before parsing; a rejected signature never
    reaches the row store.
    """

    def __init__(
        self,
        config: PaddleConfig,
        database: SubscriptionDatabase,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize webhook handler.

        Args:
            config: Paddle configuration (for the endpoint secret)
            database: Subscription database
            clock: Source of "now" (injectable for tests)
        """
        self.config = config
        self.database = database
        self.clock = clock

        self._handlers: dict[str, Callable[[PaddleEvent], Awaitable[WebhookOutcome]]] = {
            "subscription.created": self._handle_activation,
            "subscription.activated": self._handle_activation,
            "subscription.updated": self._handle_updated,
            "payment.succeeded": self._handle_payment,
            "transaction.completed": self._handle_payment,
            "subscription.canceled": self._handle_status_change,
            "subscription.paused": self._handle_status_change,
            "subscription.resumed": self._handle_status_change,
        }

    async def handle_event(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """
        Verify, parse and apply one Paddle delivery.

        Args:
            payload: Raw request body
            signature: Paddle-Signature header value

        Returns:
            WebhookOutcome: What was done with the event

        Raises:
            ConfigurationError: If no endpoint secret is configured
            WebhookSignatureError: If the signature does not verify
            WebhookPayloadError: If the body is malformed or lacks required fields
            StorageError: If persisting the event fails
        """
        if not self.config.endpoint_secret_key:
            raise ConfigurationError("PADDLE_ENDPOINT_SECRET_KEY is not set")

        if not verify_paddle_signature(
            payload,
            signature,
            self.config.endpoint_secret_key,
            tolerance_seconds=self.config.signature_tolerance_seconds,
            now=self.clock().timestamp(),
        ):
            track_webhook_event("unknown", "invalid_signature")
            raise WebhookSignatureError("Invalid signature")

        event = self._parse(payload)
        logger.info(
            "Processing Paddle webhook event",
            extra={"event_type": event.event_type, "event_id": event.event_id},
        )

        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Ignoring unhandled webhook event", extra={"event_type": event.event_type})
            track_webhook_event(event.event_type, "ignored")
            return WebhookOutcome(event_type=event.event_type, event_id=event.event_id, result="ignored")

        try:
            outcome = await handler(event)
        except WebhookPayloadError:
            track_webhook_event(event.event_type, "invalid_payload")
            raise
        except ValidationError as e:
            track_webhook_event(event.event_type, "invalid_payload")
            raise WebhookPayloadError(f"Unexpected {event.event_type} payload") from e

        track_webhook_event(event.event_type, outcome.result)
        logger.info(
            "Webhook event processed",
            extra={
                "event_type": event.event_type,
                "event_id": event.event_id,
                "result": outcome.result,
                "paddle_subscription_id": outcome.subscription_id,
            },
        )
        return outcome

    @staticmethod
    def _parse(payload: bytes) -> PaddleEvent:
        try:
            body = json.loads(payload)
        except ValueError as e:
            raise WebhookPayloadError("Invalid JSON") from e

        if not isinstance(body, dict):
            raise WebhookPayloadError("Unexpected payload shape")

        try:
            return PaddleEvent.model_validate(body)
        except ValidationError as e:
            raise WebhookPayloadError("Unexpected payload shape") from e

    def _outcome(self, event: PaddleEvent, result: str, subscription_id: str | None) -> WebhookOutcome:
        return WebhookOutcome(
            event_type=event.event_type,
            event_id=event.event_id,
            result=result,
            subscription_id=subscription_id,
        )

    async def _resolve_plan_id(self, data: PaddleSubscription) -> str | None:
        """Plan by Paddle price id, falling back to ``custom_data.plan_id``."""
        if data.price_id:
            plan = await self.database.get_plan_by_price_id(data.price_id)
            if plan is not None:
                return plan.id

        if data.custom_plan_id:
            plan = await self.database.get_plan(data.custom_plan_id)
            if plan is not None:
                return plan.id
        return None

    async def _handle_activation(self, event: PaddleEvent) -> WebhookOutcome:
        """Upsert the paid row and retire the user's Free row."""
        data = event.subscription
        paddle_id = data.external_id
        user_id = data.user_id
        plan_id = await self._resolve_plan_id(data)

        if not user_id or not plan_id or not paddle_id:
            raise WebhookPayloadError("Missing user_id, plan or subscription id")

        now = self.clock()
        starts_at = data.period_starts_at or now
        ends_at = data.period_ends_at or add_one_month(starts_at)
        status = REMOTE_STATUS_MAP.get(data.status or "", SubscriptionStatus.ACTIVE)
        scheduled_change_at = data.scheduled_change_at

        stored, applied = await self.database.upsert_subscription_by_external_id(
            SubscriptionCreate(
                user_id=user_id,
                plan_id=plan_id,
                status=status,
                starts_at=starts_at,
                ends_at=ends_at,
                auto_renew=status != SubscriptionStatus.CANCELED and scheduled_change_at is None,
                cancel_at=scheduled_change_at,
                paddle_subscription_id=paddle_id,
                paddle_transaction_id=data.resolved_transaction_id,
                last_event_at=event.occurred_at,
            ),
            now=now,
        )
        if not applied:
            return self._outcome(event, "stale", paddle_id)

        if status == SubscriptionStatus.ACTIVE:
            superseded = await self.database.supersede_local_subscriptions(user_id, now=now)
            if superseded:
                logger.info(
                    "Paid subscription superseded Free subscription",
                    extra={"user_id": user_id, "paddle_subscription_id": paddle_id},
                )

        return self._outcome(event, "applied", stored.paddle_subscription_id if stored else paddle_id)

    async def _handle_updated(self, event: PaddleEvent) -> WebhookOutcome:
        """Apply plan, scheduled change and (forward-only) window updates."""
        data = event.subscription
        paddle_id = data.external_id
        if not paddle_id:
            return self._outcome(event, "skipped", None)

        existing = await self.database.get_subscription_by_external_id(paddle_id)
        if existing is None:
            if data.user_id:
                # Update delivered before the creation event
                return await self._handle_activation(event)
            return self._outcome(event, "ignored", paddle_id)

        fields: dict = {}
        plan_id = await self._resolve_plan_id(data)
        if plan_id:
            fields["plan_id"] = plan_id

        if "scheduled_change" in event.data:
            fields["cancel_at"] = data.scheduled_change_at
            fields["auto_renew"] = (
                data.scheduled_change_at is None and data.status != "canceled"
            )

        if data.period_starts_at and data.period_ends_at and (
            existing.ends_at is None or data.period_ends_at > existing.ends_at
        ):
            fields["starts_at"] = data.period_starts_at
            fields["ends_at"] = data.period_ends_at

        return await self._apply_update(event, paddle_id, fields)

    async def _handle_payment(self, event: PaddleEvent) -> WebhookOutcome:
        """Advance the billing window after a successful renewal payment."""
        data = event.subscription
        if event.event_type.startswith("transaction."):
            # Transaction payloads carry their own id; the subscription is referenced
            paddle_id = data.subscription_id
            transaction_id = data.id
        else:
            paddle_id = data.external_id
            transaction_id = data.resolved_transaction_id

        if not paddle_id or not data.period_starts_at or not data.period_ends_at:
            return self._outcome(event, "skipped", paddle_id)

        advanced = await self.database.advance_window(
            paddle_id,
            data.period_starts_at,
            data.period_ends_at,
            transaction_id=transaction_id,
            now=self.clock(),
        )
        return self._outcome(event, "applied" if advanced else "unchanged", paddle_id)

    async def _handle_status_change(self, event: PaddleEvent) -> WebhookOutcome:
        """Cancel, pause or resume; the window is applied only when present."""
        data = event.subscription
        paddle_id = data.external_id
        if not paddle_id:
            return self._outcome(event, "skipped", None)

        status, auto_renew = STATUS_EVENTS[event.event_type]
        fields: dict = {"status": status, "auto_renew": auto_renew}
        if data.period_starts_at and data.period_ends_at:
            fields["starts_at"] = data.period_starts_at
            fields["ends_at"] = data.period_ends_at
        if status == SubscriptionStatus.ACTIVE:
            fields["cancel_at"] = None

        outcome = await self._apply_update(event, paddle_id, fields)
        if outcome.result == "applied" and status == SubscriptionStatus.ACTIVE:
            resumed = await self.database.get_subscription_by_external_id(paddle_id)
            if resumed is not None:
                await self.database.supersede_local_subscriptions(resumed.user_id, now=self.clock())
        return outcome

    async def _apply_update(self, event: PaddleEvent, paddle_id: str, fields: dict) -> WebhookOutcome:
        updated = await self.database.update_subscription_by_external_id(
            paddle_id, fields, event_at=event.occurred_at, now=self.clock()
        )
        if updated is not None:
            return self._outcome(event, "applied", paddle_id)

        exists = await self.database.get_subscription_by_external_id(paddle_id)
        return self._outcome(event, "stale" if exists else "ignored", paddle_id)
