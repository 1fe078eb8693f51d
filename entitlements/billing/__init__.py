"""
Billing and entitlement management.

Paddle integration for:
- Entitlement resolution with lazy reconciliation (subscriptions.py)
- Metered usage policies and plan gates (usage.py)
- Auto-renew, plan change and payment-method sessions (operations.py)
- Webhook verification and ingestion (signature.py, webhooks.py)
"""

from entitlements.billing.operations import SubscriptionManager
from entitlements.billing.paddle_client import PaddleClient
from entitlements.billing.subscriptions import EntitlementResolver
from entitlements.billing.usage import PlanAccess, UsagePolicy
from entitlements.billing.webhooks import PaddleWebhookHandler

__all__ = [
    "EntitlementResolver",
    "PaddleClient",
    "PaddleWebhookHandler",
    "PlanAccess",
    "SubscriptionManager",
    "UsagePolicy",
]
