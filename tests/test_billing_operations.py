"""
Tests for auto-renew, plan change and payment-method operations.

Paddle is mocked; each test checks both the remote call and the local
projection (or its absence when Paddle fails).
"""

from datetime import UTC, datetime

import pytest

from entitlements.billing.operations import (
    InvalidPlanChangeError,
    SubscriptionConflictError,
    SubscriptionManager,
    SubscriptionNotFoundError,
)
from entitlements.billing.paddle_client import PaddleError
from entitlements.billing.webhooks import PaddleWebhookHandler
from entitlements.config import PaddleConfig
from entitlements.models.subscription import ProrationMode, SubscriptionStatus

APR_10 = datetime(2025, 4, 10, tzinfo=UTC)
MAR_29 = datetime(2025, 3, 29, tzinfo=UTC)


@pytest.fixture
def manager(database, paddle, resolver, entitlement_config, paddle_config, clock):
    return SubscriptionManager(
        database, paddle, resolver, entitlement_config, paddle_config, clock=clock
    )


class TestManageableSubscription:
    @pytest.mark.asyncio
    async def test_free_user_has_nothing_to_manage(self, manager, resolver, plans):
        await resolver.ensure_active_subscription("user-1")

        with pytest.raises(SubscriptionNotFoundError):
            await manager.get_auto_renew("user-1")

    @pytest.mark.asyncio
    async def test_unknown_user_has_nothing_to_manage(self, manager, plans):
        with pytest.raises(SubscriptionNotFoundError):
            await manager.set_auto_renew("user-1", False)

    @pytest.mark.asyncio
    async def test_paused_subscription_conflicts(self, manager, paddle, plans, add_paid_subscription):
        await add_paid_subscription(status=SubscriptionStatus.PAUSED)

        with pytest.raises(SubscriptionConflictError):
            await manager.set_auto_renew("user-1", False)
        paddle.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_trial_ending_before_free_window_is_manageable(
        self, manager, resolver, database, paddle_config, clock, plans, signed_event, paddle_payload
    ):
        free, _ = await resolver.ensure_active_subscription("user-1")
        handler = PaddleWebhookHandler(paddle_config, database, clock=clock)
        body, signature = signed_event(
            "subscription.activated",
            paddle_payload(
                status="trialing", starts_at="2025-03-15T00:00:00Z", ends_at="2025-03-29T00:00:00Z"
            ),
        )
        await handler.handle_event(body, signature)

        _, plan = await resolver.ensure_active_subscription("user-1")
        state = await manager.get_auto_renew("user-1")

        assert plan.name == "Pro"
        assert free.ends_at > MAR_29
        assert state.status == "active"
        assert state.renews_at == MAR_29

    @pytest.mark.asyncio
    async def test_latest_paddle_row_wins_over_older_canceled_one(
        self, manager, plans, add_paid_subscription
    ):
        await add_paid_subscription(
            paddle_id="sub_old",
            starts_at=datetime(2025, 1, 10, tzinfo=UTC),
            ends_at=datetime(2025, 2, 10, tzinfo=UTC),
            status=SubscriptionStatus.CANCELED,
            auto_renew=False,
        )
        await add_paid_subscription(paddle_id="sub_01")

        state = await manager.get_auto_renew("user-1")

        assert state.status == "active"
        assert state.renews_at == APR_10

class TestAutoRenew:
    @pytest.mark.asyncio
    async def test_disable_schedules_cancel(
        self, manager, paddle, database, plans, add_paid_subscription, remote_subscription
    ):
        row = await add_paid_subscription()
        paddle.cancel_subscription.return_value = remote_subscription(
            scheduled_change={"action": "cancel", "effective_at": "2025-04-10T00:00:00Z"}
        )

        state = await manager.set_auto_renew("user-1", False)

        paddle.cancel_subscription.assert_awaited_once_with(
            "sub_01", effective_from="next_billing_period"
        )
        assert state.auto_renew is False
        assert state.cancel_at == APR_10
        stored = await database.get_subscription(row.id)
        assert stored.auto_renew is False
        assert stored.cancel_at == APR_10
        assert stored.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_disable_without_remote_body_uses_period_end(
        self, manager, paddle, plans, add_paid_subscription
    ):
        await add_paid_subscription()
        paddle.cancel_subscription.return_value = None

        state = await manager.set_auto_renew("user-1", False)

        assert state.cancel_at == APR_10
        assert state.renews_at == APR_10

    @pytest.mark.asyncio
    async def test_enable_clears_scheduled_change(
        self, manager, paddle, plans, add_paid_subscription, remote_subscription
    ):
        await add_paid_subscription(auto_renew=False)
        paddle.clear_scheduled_change.return_value = remote_subscription()

        state = await manager.set_auto_renew("user-1", True)

        paddle.clear_scheduled_change.assert_awaited_once_with("sub_01")
        assert state.auto_renew is True
        assert state.cancel_at is None

    @pytest.mark.asyncio
    async def test_unchanged_state_makes_no_paddle_call(
        self, manager, paddle, plans, add_paid_subscription
    ):
        await add_paid_subscription(auto_renew=True)

        state = await manager.set_auto_renew("user-1", True)

        assert state.auto_renew is True
        paddle.clear_scheduled_change.assert_not_awaited()
        paddle.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lapsed_row_reconciled_before_toggle(
        self, manager, paddle, database, plans, add_paid_subscription, remote_subscription
    ):
        row = await add_paid_subscription(
            starts_at=datetime(2025, 2, 10, tzinfo=UTC), ends_at=datetime(2025, 3, 10, tzinfo=UTC)
        )
        paddle.get_subscription.return_value = remote_subscription()
        paddle.cancel_subscription.return_value = None

        state = await manager.set_auto_renew("user-1", False)

        paddle.get_subscription.assert_awaited_once_with("sub_01")
        paddle.cancel_subscription.assert_awaited_once_with(
            "sub_01", effective_from="next_billing_period"
        )
        assert state.renews_at == APR_10
        assert state.cancel_at == APR_10
        stored = await database.get_subscription(row.id)
        assert stored.starts_at == datetime(2025, 3, 10, tzinfo=UTC)
        assert stored.auto_renew is False

    @pytest.mark.asyncio
    async def test_paddle_failure_leaves_row_untouched(
        self, manager, paddle, database, plans, add_paid_subscription
    ):
        row = await add_paid_subscription()
        paddle.cancel_subscription.side_effect = PaddleError("Paddle request failed (500): oops", 500)

        with pytest.raises(PaddleError):
            await manager.set_auto_renew("user-1", False)

        assert (await database.get_subscription(row.id)).auto_renew is True

    @pytest.mark.asyncio
    async def test_state_response_shape(self, manager, plans, add_paid_subscription):
        await add_paid_subscription()

        response = (await manager.get_auto_renew("user-1")).as_response()

        assert response == {
            "autoRenew": True,
            "status": "active",
            "renewsAt": APR_10.isoformat(),
            "cancelAt": None,
        }


class TestChangePlan:
    @pytest.mark.asyncio
    async def test_immediate_change_updates_local_plan(
        self, manager, paddle, database, plans, add_paid_subscription, remote_subscription
    ):
        row = await add_paid_subscription()
        paddle.change_price.return_value = remote_subscription(
            price_id="pri_business", starts_at="2025-03-15T12:00:00Z", ends_at="2026-03-15T12:00:00Z"
        )

        result = await manager.change_plan("user-1", plan_id="business")

        paddle.change_price.assert_awaited_once_with("sub_01", "pri_business", 1)
        assert result.applied_locally
        assert result.paddle_price_id == "pri_business"
        stored = await database.get_subscription(row.id)
        assert stored.plan_id == "business"
        assert stored.ends_at == datetime(2026, 3, 15, 12, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_next_period_change_waits_for_webhook(
        self, manager, paddle, database, plans, add_paid_subscription
    ):
        row = await add_paid_subscription()
        paddle.schedule_change.return_value = None

        result = await manager.change_plan(
            "user-1", paddle_price_id="pri_business", proration=ProrationMode.NEXT_BILLING_PERIOD
        )

        paddle.schedule_change.assert_awaited_once_with("sub_01", "pri_business", 1)
        paddle.change_price.assert_not_awaited()
        assert not result.applied_locally
        assert (await database.get_subscription(row.id)).plan_id == "pro"

    @pytest.mark.asyncio
    async def test_unknown_price_id_is_sent_but_not_projected(
        self, manager, paddle, database, plans, add_paid_subscription
    ):
        row = await add_paid_subscription()
        paddle.change_price.return_value = None

        result = await manager.change_plan("user-1", paddle_price_id="pri_external")

        assert not result.applied_locally
        assert result.plan_id is None
        assert (await database.get_subscription(row.id)).plan_id == "pro"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"plan_id": "missing"},
            {"plan_id": "free"},
            {},
            {"plan_id": "business", "quantity": 0},
        ],
    )
    async def test_invalid_targets_rejected(
        self, manager, paddle, plans, add_paid_subscription, kwargs
    ):
        await add_paid_subscription()

        with pytest.raises(InvalidPlanChangeError):
            await manager.change_plan("user-1", **kwargs)
        paddle.change_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paddle_failure_aborts_before_local_write(
        self, manager, paddle, database, plans, add_paid_subscription
    ):
        row = await add_paid_subscription()
        paddle.change_price.side_effect = PaddleError("Paddle request failed (400): bad price", 400)

        with pytest.raises(PaddleError):
            await manager.change_plan("user-1", plan_id="business")

        assert (await database.get_subscription(row.id)).plan_id == "pro"


class TestPaymentMethod:
    @pytest.mark.asyncio
    async def test_static_portal_url_preferred(
        self, database, paddle, resolver, entitlement_config, clock, plans, add_paid_subscription
    ):
        await add_paid_subscription()
        manager = SubscriptionManager(
            database,
            paddle,
            resolver,
            entitlement_config,
            PaddleConfig(api_key="pdl_test_key", customer_portal_url="https://portal.example/acme"),
            clock=clock,
        )

        url = await manager.create_payment_method_session("user-1", "https://app.example/billing")

        assert url == "https://portal.example/acme"
        paddle.get_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_portal_session_for_customer(
        self, manager, paddle, plans, add_paid_subscription, remote_subscription
    ):
        await add_paid_subscription()
        paddle.get_subscription.return_value = remote_subscription()
        paddle.create_portal_session.return_value = "https://customer-portal.paddle.com/cpl_01"

        url = await manager.create_payment_method_session("user-1", "https://app.example/billing")

        paddle.create_portal_session.assert_awaited_once_with(
            "ctm_01", "https://app.example/billing"
        )
        assert url == "https://customer-portal.paddle.com/cpl_01"

    @pytest.mark.asyncio
    async def test_falls_back_to_update_payment_method_link(
        self, manager, paddle, plans, add_paid_subscription, remote_subscription
    ):
        await add_paid_subscription()
        paddle.get_subscription.return_value = remote_subscription()
        paddle.create_portal_session.side_effect = PaddleError("portal disabled", 403)
        paddle.create_update_payment_method_link.return_value = "https://pay.paddle.com/update"

        url = await manager.create_payment_method_session("user-1", "https://app.example/billing")

        assert url == "https://pay.paddle.com/update"

    @pytest.mark.asyncio
    async def test_no_url_is_an_upstream_error(
        self, manager, paddle, plans, add_paid_subscription, remote_subscription
    ):
        await add_paid_subscription()
        paddle.get_subscription.return_value = remote_subscription()
        paddle.create_portal_session.return_value = None
        paddle.create_update_payment_method_link.return_value = None

        with pytest.raises(PaddleError):
            await manager.create_payment_method_session("user-1", "https://app.example/billing")
