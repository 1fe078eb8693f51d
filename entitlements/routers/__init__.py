"""
API routers for the entitlements service.

Routers:
- usage: transcription, export and summary quotas; upload size checks
- user: current plan, subscription status, feature gates
- subscription: auto-renew, plan change, payment-method session
- webhooks: Paddle webhook ingestion
"""

from entitlements.routers.subscription import router as subscription_router
from entitlements.routers.usage import router as usage_router
from entitlements.routers.user import router as user_router
from entitlements.routers.webhooks import router as webhooks_router

__all__ = ["subscription_router", "usage_router", "user_router", "webhooks_router"]
