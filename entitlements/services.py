"""
Service container.

Builds every component once at application startup and hands the same
instances to the HTTP layer through ``app.state.services``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import httpx

from entitlements.auth.tokens import SessionTokenVerifier
from entitlements.billing.operations import SubscriptionManager
from entitlements.billing.paddle_client import PaddleClient
from entitlements.billing.subscriptions import EntitlementResolver
from entitlements.billing.usage import PlanAccess, UsagePolicy
from entitlements.billing.webhooks import PaddleWebhookHandler
from entitlements.config import Settings
from entitlements.models.usage import USAGE_METERS, UsageType
from entitlements.storage.database import SubscriptionDatabase
from entitlements.utils.periods import utcnow

logger = logging.getLogger(__name__)


@dataclass
class EntitlementServices:
    settings: Settings
    database: SubscriptionDatabase
    paddle: PaddleClient
    resolver: EntitlementResolver
    access: PlanAccess
    manager: SubscriptionManager
    webhooks: PaddleWebhookHandler
    tokens: SessionTokenVerifier
    policies: dict[UsageType, UsagePolicy] = field(default_factory=dict)

    @classmethod
    async def create(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "EntitlementServices":
        """
        Open the row store and wire the components together.

        Args:
            settings: Application settings
            transport: Optional httpx transport for the Paddle client (tests)
            clock: Source of "now" shared by every component
        """
        database = SubscriptionDatabase(
            db_path=settings.storage.db_path,
            plan_cache_ttl_seconds=settings.storage.plan_cache_ttl_seconds,
        )
        await database.initialize()

        paddle = PaddleClient(settings.paddle, transport=transport)
        resolver = EntitlementResolver(database, paddle, settings.entitlement, clock=clock)
        policies = {
            usage_type: UsagePolicy(meter, resolver, database, settings.entitlement)
            for usage_type, meter in USAGE_METERS.items()
        }

        services = cls(
            settings=settings,
            database=database,
            paddle=paddle,
            resolver=resolver,
            access=PlanAccess(resolver),
            manager=SubscriptionManager(
                database,
                paddle,
                resolver,
                settings.entitlement,
                settings.paddle,
                clock=clock,
            ),
            webhooks=PaddleWebhookHandler(settings.paddle, database, clock=clock),
            tokens=SessionTokenVerifier(
                settings.auth.session_secret,
                cache_ttl_seconds=settings.auth.token_cache_ttl_seconds,
            ),
            policies=policies,
        )
        logger.info(
            "Entitlement services ready",
            extra={"paddle_enabled": paddle.is_enabled, "db_path": settings.storage.db_path},
        )
        return services

    def policy(self, usage_type: UsageType) -> UsagePolicy:
        return self.policies[usage_type]

    async def close(self) -> None:
        await self.paddle.close()
        self.database.close()
