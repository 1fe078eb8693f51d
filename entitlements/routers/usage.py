"""
Metered usage API endpoints.

Limits and validation are advisory; the record endpoints are the enforcement
boundary and answer 429 with the current limits when the quota is exhausted.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, Field

from entitlements.auth.dependencies import get_authenticated_user_id, get_services
from entitlements.billing.usage import UsagePolicy
from entitlements.models.usage import UsageType
from entitlements.rate_limits import limiter, record_rate_limit
from entitlements.routers.responses import error_response
from entitlements.services import EntitlementServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Usage"])


class MinutesRequest(BaseModel):
    minutes: int = Field(..., gt=0, description="Transcription minutes")


class ExportRecordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int = Field(default=1, gt=0)
    summary_id: str | None = Field(default=None, alias="summaryId", max_length=200)


class SummaryRecordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    count: int = Field(default=1, gt=0)
    reference_id: str | None = Field(default=None, alias="referenceId", max_length=200)


class UploadValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    size_mb: float = Field(..., alias="sizeMb", ge=0)


async def _record(policy: UsagePolicy, user_id: str, quantity: int, reference_id: str | None):
    result = await policy.record(user_id, quantity, reference_id=reference_id)
    body = result.as_response(policy.meter)
    if not result.success:
        return error_response(
            status.HTTP_429_TOO_MANY_REQUESTS,
            result.error or "Usage limit reached",
            "quota_exceeded",
            False,
            updatedLimits=body["updatedLimits"],
        )
    return body


# ----------------------------------------------------------------------
# Transcription
# ----------------------------------------------------------------------


@router.get("/transcription/limits")
async def get_transcription_limits(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    policy = services.policy(UsageType.TRANSCRIPTION)
    limits = await policy.check_limit(user_id)
    return limits.as_response(policy.meter)


@router.post("/transcription/validate")
async def validate_transcription(
    payload: MinutesRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    """Advisory check before starting a transcription."""
    policy = services.policy(UsageType.TRANSCRIPTION)
    result = await policy.validate(user_id, payload.minutes)
    return result.as_response(policy.meter)


@router.post("/transcription/record")
@limiter.limit(record_rate_limit)
async def record_transcription(
    request: Request,
    payload: MinutesRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    return await _record(
        services.policy(UsageType.TRANSCRIPTION), user_id, payload.minutes, reference_id=None
    )


# ----------------------------------------------------------------------
# Exports
# ----------------------------------------------------------------------


@router.get("/exports/limits")
async def get_export_limits(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    policy = services.policy(UsageType.EXPORT)
    limits = await policy.check_limit(user_id)
    return limits.as_response(policy.meter)


@router.post("/exports/record")
@limiter.limit(record_rate_limit)
async def record_export(
    request: Request,
    payload: ExportRecordRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    return await _record(
        services.policy(UsageType.EXPORT), user_id, payload.count, reference_id=payload.summary_id
    )


# ----------------------------------------------------------------------
# Summaries
# ----------------------------------------------------------------------


@router.get("/summaries/limits")
async def get_summary_limits(
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    policy = services.policy(UsageType.SUMMARY)
    limits = await policy.check_limit(user_id)
    return limits.as_response(policy.meter)


@router.post("/summaries/record")
@limiter.limit(record_rate_limit)
async def record_summary(
    request: Request,
    payload: SummaryRecordRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    return await _record(
        services.policy(UsageType.SUMMARY), user_id, payload.count, reference_id=payload.reference_id
    )


# ----------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------


@router.post("/uploads/validate")
async def validate_upload(
    payload: UploadValidateRequest,
    user_id: str = Depends(get_authenticated_user_id),
    services: EntitlementServices = Depends(get_services),
):
    """Check a file size against the plan's upload limit."""
    result = await services.access.validate_upload(user_id, payload.size_mb)
    return result.as_response()
