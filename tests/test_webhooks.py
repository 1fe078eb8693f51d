"""
Tests for Paddle webhook ingestion.

Tests:
- Signature and payload rejection
- Activation upsert and Free supersession
- Idempotent redelivery and out-of-order (stale) events
- Renewal payments, plan updates and status changes
"""

from datetime import UTC, datetime, timedelta

import pytest

from entitlements.billing.signature import build_signature_header
from entitlements.billing.webhooks import (
    PaddleWebhookHandler,
    WebhookPayloadError,
    WebhookSignatureError,
)
from entitlements.config import ConfigurationError, PaddleConfig
from entitlements.models.subscription import SubscriptionStatus


@pytest.fixture
def handler(paddle_config, database, clock) -> PaddleWebhookHandler:
    return PaddleWebhookHandler(paddle_config, database, clock=clock)


@pytest.fixture
def activate(handler, signed_event, paddle_payload):
    """Deliver a subscription.activated event for sub_01 / user-1."""

    async def _activate(occurred_at: str = "2025-03-15T12:00:00Z", **payload_kwargs):
        body, signature = signed_event(
            "subscription.activated", paddle_payload(**payload_kwargs), occurred_at=occurred_at
        )
        return await handler.handle_event(body, signature)

    return _activate


class TestRejection:
    @pytest.mark.asyncio
    async def test_invalid_signature(self, handler, signed_event, paddle_payload, database, plans):
        body, signature = signed_event(
            "subscription.activated", paddle_payload(), secret="whsec_attacker"
        )

        with pytest.raises(WebhookSignatureError):
            await handler.handle_event(body, signature)
        assert await database.get_subscription_by_external_id("sub_01") is None

    @pytest.mark.asyncio
    async def test_replayed_delivery_rejected(
        self, handler, signed_event, paddle_payload, database, clock, plans
    ):
        body, signature = signed_event(
            "subscription.activated", paddle_payload(), signed_at=clock() - timedelta(hours=1)
        )

        with pytest.raises(WebhookSignatureError):
            await handler.handle_event(body, signature)
        assert await database.get_subscription_by_external_id("sub_01") is None

    @pytest.mark.asyncio
    async def test_stale_timestamp_accepted_when_tolerance_disabled(
        self, paddle_config, database, clock, signed_event, paddle_payload, plans
    ):
        config = paddle_config.model_copy(update={"signature_tolerance_seconds": 0})
        handler = PaddleWebhookHandler(config, database, clock=clock)
        body, signature = signed_event(
            "subscription.activated", paddle_payload(), signed_at=clock() - timedelta(days=2)
        )

        outcome = await handler.handle_event(body, signature)

        assert outcome.result == "applied"

    @pytest.mark.asyncio
    async def test_missing_signature(self, handler, signed_event, paddle_payload, plans):
        body, _ = signed_event("subscription.activated", paddle_payload())

        with pytest.raises(WebhookSignatureError):
            await handler.handle_event(body, None)

    @pytest.mark.asyncio
    async def test_missing_endpoint_secret_is_configuration_error(
        self, database, clock, signed_event, paddle_payload
    ):
        handler = PaddleWebhookHandler(PaddleConfig(endpoint_secret_key=""), database, clock=clock)
        body, signature = signed_event("subscription.activated", paddle_payload())

        with pytest.raises(ConfigurationError):
            await handler.handle_event(body, signature)

    @pytest.mark.asyncio
    async def test_invalid_json(self, handler, clock):
        body = b"{not json"
        signature = build_signature_header(
            body, "whsec_test_secret", timestamp=int(clock().timestamp())
        )
        with pytest.raises(WebhookPayloadError):
            await handler.handle_event(body, signature)

    @pytest.mark.asyncio
    async def test_activation_without_user_rejected(self, activate, plans):
        with pytest.raises(WebhookPayloadError):
            await activate(user_id=None)

    @pytest.mark.asyncio
    async def test_activation_with_unknown_plan_rejected(self, activate, plans):
        with pytest.raises(WebhookPayloadError):
            await activate(price_id="pri_unknown")

    @pytest.mark.asyncio
    async def test_unhandled_event_type_acknowledged(self, handler, signed_event):
        body, signature = signed_event("customer.updated", {"id": "ctm_01"})

        outcome = await handler.handle_event(body, signature)

        assert outcome.result == "ignored"


class TestActivation:
    @pytest.mark.asyncio
    async def test_creates_paid_row(self, activate, database, plans):
        outcome = await activate()

        row = await database.get_subscription_by_external_id("sub_01")
        assert outcome.result == "applied"
        assert row.user_id == "user-1"
        assert row.plan_id == "pro"
        assert row.status == SubscriptionStatus.ACTIVE
        assert row.auto_renew is True
        assert row.starts_at == datetime(2025, 3, 10, tzinfo=UTC)
        assert row.ends_at == datetime(2025, 4, 10, tzinfo=UTC)
        assert row.last_event_at == datetime(2025, 3, 15, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_supersedes_free_row(self, activate, resolver, plans):
        free, _ = await resolver.ensure_active_subscription("user-1")

        await activate()

        subscription, plan = await resolver.ensure_active_subscription("user-1")
        assert plan.name == "Pro"
        assert subscription.id != free.id

    @pytest.mark.asyncio
    async def test_plan_from_custom_data_when_price_unknown(self, activate, database, plans):
        await activate(price_id="pri_unknown", custom_data={"user_id": "user-1", "plan_id": "business"})

        assert (await database.get_subscription_by_external_id("sub_01")).plan_id == "business"

    @pytest.mark.asyncio
    async def test_missing_period_end_defaults_to_one_month(self, activate, database, plans):
        await activate(starts_at="2025-01-31T00:00:00Z", ends_at=None)

        row = await database.get_subscription_by_external_id("sub_01")
        assert row.ends_at == datetime(2025, 2, 28, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, activate, database, plans):
        await activate()
        await activate()

        assert len(await database.list_subscriptions("user-1")) == 1

    @pytest.mark.asyncio
    async def test_older_activation_is_stale(self, activate, database, plans):
        await activate(occurred_at="2025-03-15T12:00:00Z", price_id="pri_business")

        outcome = await activate(occurred_at="2025-03-14T12:00:00Z", price_id="pri_pro")

        assert outcome.result == "stale"
        assert (await database.get_subscription_by_external_id("sub_01")).plan_id == "business"


class TestLifecycleEvents:
    @pytest.mark.asyncio
    async def test_renewal_payment_advances_window(self, activate, handler, signed_event, database, plans):
        await activate()
        body, signature = signed_event(
            "transaction.completed",
            {
                "id": "txn_02",
                "subscription_id": "sub_01",
                "billing_period": {
                    "starts_at": "2025-04-10T00:00:00Z",
                    "ends_at": "2025-05-10T00:00:00Z",
                },
            },
            occurred_at="2025-04-10T00:05:00Z",
        )

        first = await handler.handle_event(body, signature)
        replay = await handler.handle_event(body, signature)

        row = await database.get_subscription_by_external_id("sub_01")
        assert first.result == "applied"
        assert replay.result == "unchanged"
        assert row.ends_at == datetime(2025, 5, 10, tzinfo=UTC)
        assert row.paddle_transaction_id == "txn_02"

    @pytest.mark.asyncio
    async def test_payment_without_period_skipped(self, handler, signed_event, plans):
        body, signature = signed_event("payment.succeeded", {"id": "sub_01"})

        assert (await handler.handle_event(body, signature)).result == "skipped"

    @pytest.mark.asyncio
    async def test_update_applies_plan_and_scheduled_cancel(
        self, activate, handler, signed_event, paddle_payload, database, plans
    ):
        await activate()
        body, signature = signed_event(
            "subscription.updated",
            paddle_payload(
                price_id="pri_business",
                scheduled_change={"action": "cancel", "effective_at": "2025-04-10T00:00:00Z"},
            ),
            occurred_at="2025-03-16T09:00:00Z",
        )

        outcome = await handler.handle_event(body, signature)

        row = await database.get_subscription_by_external_id("sub_01")
        assert outcome.result == "applied"
        assert row.plan_id == "business"
        assert row.auto_renew is False
        assert row.cancel_at == datetime(2025, 4, 10, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_update_never_moves_window_backwards(
        self, activate, handler, signed_event, paddle_payload, database, plans
    ):
        await activate()
        body, signature = signed_event(
            "subscription.updated",
            paddle_payload(starts_at="2025-02-10T00:00:00Z", ends_at="2025-03-10T00:00:00Z"),
            occurred_at="2025-03-16T09:00:00Z",
        )

        await handler.handle_event(body, signature)

        row = await database.get_subscription_by_external_id("sub_01")
        assert row.ends_at == datetime(2025, 4, 10, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_update_before_creation_activates(
        self, handler, signed_event, paddle_payload, database, plans
    ):
        body, signature = signed_event("subscription.updated", paddle_payload())

        outcome = await handler.handle_event(body, signature)

        assert outcome.result == "applied"
        assert (await database.get_subscription_by_external_id("sub_01")).plan_id == "pro"

    @pytest.mark.asyncio
    async def test_stale_update_ignored(self, activate, handler, signed_event, paddle_payload, database, plans):
        await activate(occurred_at="2025-03-15T12:00:00Z")
        body, signature = signed_event(
            "subscription.updated",
            paddle_payload(price_id="pri_business"),
            occurred_at="2025-03-01T00:00:00Z",
        )

        outcome = await handler.handle_event(body, signature)

        assert outcome.result == "stale"
        assert (await database.get_subscription_by_external_id("sub_01")).plan_id == "pro"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type,status,auto_renew",
        [
            ("subscription.canceled", SubscriptionStatus.CANCELED, False),
            ("subscription.paused", SubscriptionStatus.PAUSED, False),
        ],
    )
    async def test_status_changes(
        self, activate, handler, signed_event, database, plans, event_type, status, auto_renew
    ):
        await activate()
        body, signature = signed_event(
            event_type, {"id": "sub_01", "status": status.value}, occurred_at="2025-03-20T00:00:00Z"
        )

        outcome = await handler.handle_event(body, signature)

        row = await database.get_subscription_by_external_id("sub_01")
        assert outcome.result == "applied"
        assert row.status == status
        assert row.auto_renew is auto_renew
        assert row.ends_at == datetime(2025, 4, 10, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_resume_reactivates_and_supersedes_free(
        self, activate, handler, signed_event, resolver, database, plans
    ):
        await activate()
        paused_body, paused_sig = signed_event(
            "subscription.paused", {"id": "sub_01"}, occurred_at="2025-03-16T00:00:00Z"
        )
        await handler.handle_event(paused_body, paused_sig)

        # While paused the user falls back to Free
        _, plan = await resolver.ensure_active_subscription("user-1")
        assert plan.name == "Free"

        resumed_body, resumed_sig = signed_event(
            "subscription.resumed", {"id": "sub_01"}, occurred_at="2025-03-17T00:00:00Z"
        )
        outcome = await handler.handle_event(resumed_body, resumed_sig)

        subscription, plan = await resolver.ensure_active_subscription("user-1")
        assert outcome.result == "applied"
        assert plan.name == "Pro"
        assert subscription.auto_renew is True

    @pytest.mark.asyncio
    async def test_status_change_for_unknown_subscription_ignored(self, handler, signed_event, plans):
        body, signature = signed_event("subscription.canceled", {"id": "sub_missing"})

        assert (await handler.handle_event(body, signature)).result == "ignored"
