"""
Current plan and feature endpoints.

All three resolve the user's entitlement first; a user without one gets 403.
"""

from fastapi import APIRouter, Depends

from entitlements.auth.dependencies import get_authenticated_user_id, get_services
from entitlements.models.plan import PlanFeature
from entitlements.models.usage import UsageType
from entitlements.services import EntitlementServices
from entitlements.utils.periods import to_iso

router = APIRouter(prefix="/api/user", tags=["User"])


@router.get("/plan")
async def get_user_plan(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    subscription, plan = await services.access.require_entitlement(user_id)
    return {
        "userId": user_id,
        "plan": plan.summary(),
        "subscription": {
            "status": subscription.status.value,
            "startsAt": to_iso(subscription.starts_at),
            "endsAt": to_iso(subscription.ends_at),
            "autoRenew": subscription.auto_renew,
            "cancelAt": to_iso(subscription.cancel_at),
            "managedBy": "local" if subscription.is_locally_managed else "paddle",
        },
    }


@router.get("/subscription-status")
async def get_subscription_status(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    """Plan summary plus the transcription allowance, for page headers."""
    subscription, plan = await services.access.require_entitlement(user_id)
    limits = await services.policy(UsageType.TRANSCRIPTION).check_limit(user_id)
    return {
        "userId": user_id,
        "plan": plan.summary(),
        "status": subscription.status.value,
        "renewsAt": to_iso(subscription.ends_at) if subscription.auto_renew else None,
        "canTranscribe": limits.allowed,
        "remainingMinutes": limits.remaining,
    }


@router.get("/features/{feature}")
async def check_feature(
    feature: PlanFeature,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    plan = await services.access.require_feature(user_id, feature)
    return {"feature": feature.value, "enabled": True, "planName": plan.name}
