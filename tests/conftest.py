"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Temporary SQLite subscription database with a seeded plan catalog
- Frozen clock shared by every component
- Mock Paddle client
- Paddle payload and signed webhook builders
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from entitlements.billing.paddle_client import PaddleClient
from entitlements.billing.signature import build_signature_header
from entitlements.billing.subscriptions import EntitlementResolver
from entitlements.config import EntitlementConfig, PaddleConfig
from entitlements.models.paddle import PaddleSubscription
from entitlements.models.plan import BillingInterval, PlanCreate
from entitlements.models.subscription import SubscriptionCreate, SubscriptionStatus
from entitlements.storage.database import SubscriptionDatabase

FIXED_NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)
WEBHOOK_SECRET = "whsec_test_secret"

CATALOG = (
    PlanCreate(
        name="Free",
        upload_limit_mb=25,
        transcription_mins=60,
        summarization_limit=5,
        doc_export_limit=3,
    ),
    PlanCreate(
        name="Pro",
        upload_limit_mb=200,
        transcription_mins=600,
        summarization_limit=100,
        doc_export_limit=None,
        billing_interval=BillingInterval.MONTH,
        price=12.0,
        paddle_price_id="pri_pro",
        premium_templates=True,
    ),
    PlanCreate(
        name="Business",
        upload_limit_mb=1000,
        billing_interval=BillingInterval.YEAR,
        price=240.0,
        paddle_price_id="pri_business",
        premium_templates=True,
        archive_access=True,
    ),
)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def seed_catalog(database: SubscriptionDatabase) -> dict:
    """Create the test catalog; plan ids are the lower-cased names."""
    return {
        plan.name: await database.create_plan(plan, plan_id=plan.name.lower()) for plan in CATALOG
    }


@pytest.fixture
def seeded_db_path(tmp_path) -> str:
    """Database file holding the test catalog, for tests that start the whole app."""
    path = str(tmp_path / "api.db")

    async def _seed():
        db = SubscriptionDatabase(db_path=path, plan_cache_ttl_seconds=0)
        await db.initialize()
        await seed_catalog(db)
        db.close()

    asyncio.run(_seed())
    return path


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest_asyncio.fixture
async def database(tmp_path):
    """Empty subscription database (schema only)."""
    db = SubscriptionDatabase(db_path=str(tmp_path / "entitlements.db"), plan_cache_ttl_seconds=0)
    await db.initialize()
    yield db
    db.close()


@pytest_asyncio.fixture
async def plans(database):
    """Seeded catalog: Free, Pro (pri_pro) and Business (pri_business)."""
    return await seed_catalog(database)


@pytest.fixture
def paddle() -> AsyncMock:
    """Paddle client double; every API method is an AsyncMock."""
    client = AsyncMock(spec=PaddleClient)
    client.is_enabled = True
    return client


@pytest.fixture
def entitlement_config() -> EntitlementConfig:
    return EntitlementConfig(free_plan_name="Free", usage_warning_ratio=0.8)


@pytest.fixture
def paddle_config() -> PaddleConfig:
    return PaddleConfig(
        api_key="pdl_test_key",
        endpoint_secret_key=WEBHOOK_SECRET,
        customer_portal_url=None,
    )


@pytest.fixture
def resolver(database, paddle, entitlement_config, clock) -> EntitlementResolver:
    return EntitlementResolver(database, paddle, entitlement_config, clock=clock)


@pytest.fixture
def add_paid_subscription(database):
    """Factory inserting a Paddle-backed row (Pro, 10 Mar - 10 Apr 2025 by default)."""

    async def _add(
        user_id: str = "user-1",
        plan_id: str = "pro",
        paddle_id: str = "sub_01",
        starts_at: datetime = datetime(2025, 3, 10, tzinfo=UTC),
        ends_at: datetime | None = datetime(2025, 4, 10, tzinfo=UTC),
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        auto_renew: bool = True,
        last_event_at: datetime | None = None,
    ):
        return await database.insert_subscription(
            SubscriptionCreate(
                user_id=user_id,
                plan_id=plan_id,
                status=status,
                starts_at=starts_at,
                ends_at=ends_at,
                auto_renew=auto_renew,
                paddle_subscription_id=paddle_id,
                last_event_at=last_event_at,
            ),
            now=FIXED_NOW,
        )

    return _add


@pytest.fixture
def paddle_payload():
    """Factory for Paddle subscription entity dicts."""

    def _payload(
        paddle_id: str = "sub_01",
        status: str = "active",
        price_id: str | None = "pri_pro",
        starts_at: str | None = "2025-03-10T00:00:00Z",
        ends_at: str | None = "2025-04-10T00:00:00Z",
        user_id: str | None = "user-1",
        **extra,
    ) -> dict:
        payload: dict = {"id": paddle_id, "status": status, "customer_id": "ctm_01"}
        if price_id:
            payload["items"] = [{"price": {"id": price_id}, "quantity": 1}]
        if starts_at or ends_at:
            payload["current_billing_period"] = {"starts_at": starts_at, "ends_at": ends_at}
        if user_id:
            payload["custom_data"] = {"user_id": user_id}
        payload.update(extra)
        return payload

    return _payload


@pytest.fixture
def remote_subscription(paddle_payload):
    """Factory for parsed PaddleSubscription models."""

    def _remote(**kwargs) -> PaddleSubscription:
        return PaddleSubscription.model_validate(paddle_payload(**kwargs))

    return _remote


@pytest.fixture
def signed_event(clock):
    """Factory returning (raw body, Paddle-Signature header), signed at clock time."""

    def _event(
        event_type: str,
        data: dict,
        occurred_at: str = "2025-03-15T12:00:00Z",
        event_id: str = "evt_01",
        secret: str = WEBHOOK_SECRET,
        signed_at: datetime | None = None,
    ) -> tuple[bytes, str]:
        body = json.dumps(
            {
                "event_id": event_id,
                "event_type": event_type,
                "occurred_at": occurred_at,
                "data": data,
            }
        ).encode("utf-8")
        timestamp = int((signed_at or clock()).timestamp())
        return body, build_signature_header(body, secret, timestamp=timestamp)

    return _event
