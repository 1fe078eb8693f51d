"""
Paddle webhook endpoint.

Unauthenticated: trust comes from the Paddle-Signature header, verified
against the raw body before anything is parsed.
"""

from fastapi import APIRouter, Depends, Request

from entitlements.auth.dependencies import get_services
from entitlements.billing.signature import SIGNATURE_HEADER
from entitlements.services import EntitlementServices

router = APIRouter(prefix="/api", tags=["Webhooks"])


@router.post("/paddle-webhook")
async def paddle_webhook(
    request: Request,
    services: EntitlementServices = Depends(get_services),
):
    payload = await request.body()
    outcome = await services.webhooks.handle_event(payload, request.headers.get(SIGNATURE_HEADER))
    return {
        "received": True,
        "eventType": outcome.event_type,
        "eventId": outcome.event_id,
        "result": outcome.result,
    }
