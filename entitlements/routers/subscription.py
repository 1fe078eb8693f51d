"""
Billing operation endpoints.

Auto-renew toggle, plan change and payment-method session. Each mutates the
subscription in Paddle first; errors map to 404 (no Paddle-backed
subscription), 409 (status forbids the change) or 502 (Paddle failure).
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from entitlements.auth.dependencies import get_authenticated_user_id, get_services
from entitlements.models.subscription import ProrationMode
from entitlements.rate_limits import limiter, record_rate_limit
from entitlements.services import EntitlementServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscription", tags=["Subscription"])


class AutoRenewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auto_renew: bool = Field(..., alias="autoRenew")


class ChangePlanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str | None = Field(default=None, alias="planId")
    paddle_price_id: str | None = Field(default=None, alias="paddlePriceId")
    proration: ProrationMode = ProrationMode.IMMEDIATE
    quantity: int = 1


def build_return_url(request: Request, site_url: str | None) -> str:
    """Billing page URL on the caller's origin, the configured site, or this host."""
    base = request.headers.get("origin") or site_url or str(request.base_url)
    return f"{base.rstrip('/')}/billing"


@router.get("/auto-renew")
async def get_auto_renew(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    state = await services.manager.get_auto_renew(user_id)
    return state.as_response()


@router.patch("/auto-renew")
@limiter.limit(record_rate_limit)
async def set_auto_renew(
    request: Request,
    payload: AutoRenewRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    state = await services.manager.set_auto_renew(user_id, payload.auto_renew)
    return {"success": True, **state.as_response()}


@router.post("/change-plan")
@limiter.limit(record_rate_limit)
async def change_plan(
    request: Request,
    payload: ChangePlanRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    result = await services.manager.change_plan(
        user_id,
        plan_id=payload.plan_id,
        paddle_price_id=payload.paddle_price_id,
        proration=payload.proration,
        quantity=payload.quantity,
    )
    return result.as_response()


@router.post("/payment-method")
@limiter.limit(record_rate_limit)
async def create_payment_method_session(
    request: Request,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    """Paddle-hosted URL for updating the card on file."""
    return_url = build_return_url(request, services.settings.service.site_url)
    url = await services.manager.create_payment_method_session(user_id, return_url)
    return {"url": url}
