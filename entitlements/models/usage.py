"""
Metered usage models.

Usage records are append-only and matched to a billing window by timestamp,
not by a foreign key to the subscription row.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class UsageType(str, Enum):
    """Metered capabilities."""

    TRANSCRIPTION = "transcription"
    EXPORT = "export"
    SUMMARY = "summary"


@dataclass(frozen=True)
class UsageMeter:
    """
    Static description of one metered capability.

    Ties a usage ledger table to the plan allowance it is checked against and
    to the response keys the UI layer consumes.
    """

    usage_type: UsageType
    table: str
    plan_field: str
    unit: str
    allowed_key: str
    remaining_key: str
    used_key: str
    subscribe_message: str
    remaining_message: str
    exhausted_message: str
    unlimited_message: str


TRANSCRIPTION_METER = UsageMeter(
    usage_type=UsageType.TRANSCRIPTION,
    table="transcription_usage",
    plan_field="transcription_mins",
    unit="minutes",
    allowed_key="canTranscribe",
    remaining_key="remainingMinutes",
    used_key="usedMinutes",
    subscribe_message="Subscribe to transcribe audio",
    remaining_message="You have {remaining} minutes remaining",
    exhausted_message="You've reached your limit of {limit} transcription minutes for this period",
    unlimited_message="Unlimited transcription minutes",
)

EXPORT_METER = UsageMeter(
    usage_type=UsageType.EXPORT,
    table="export_usage",
    plan_field="doc_export_limit",
    unit="exports",
    allowed_key="canExport",
    remaining_key="remainingExports",
    used_key="usedExports",
    subscribe_message="Subscribe to export documents",
    remaining_message="You have {remaining} document exports remaining",
    exhausted_message="You've reached your {limit} export limit for this period",
    unlimited_message="Unlimited document exports",
)

SUMMARY_METER = UsageMeter(
    usage_type=UsageType.SUMMARY,
    table="summary_usage",
    plan_field="summarization_limit",
    unit="summaries",
    allowed_key="canSummarize",
    remaining_key="remainingSummaries",
    used_key="usedSummaries",
    subscribe_message="Subscribe to generate summaries",
    remaining_message="You have {remaining} summaries remaining",
    exhausted_message="You've reached your {limit} summary limit for this period",
    unlimited_message="Unlimited summaries",
)

USAGE_METERS: dict[UsageType, UsageMeter] = {
    meter.usage_type: meter for meter in (TRANSCRIPTION_METER, EXPORT_METER, SUMMARY_METER)
}


class UsageRecord(BaseModel):
    """Single append-only usage entry."""

    id: int
    user_id: str
    quantity: int
    reference_id: str | None = None
    created_at: datetime


class LimitStatus(BaseModel):
    """
    Remaining quota for one meter within the effective window.

    ``remaining`` and ``plan_limit`` are None when the allowance is unlimited.
    """

    allowed: bool
    message: str
    remaining: int | None
    plan_limit: int | None
    used: int
    billing_interval: str | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None

    def as_response(self, meter: UsageMeter) -> dict[str, Any]:
        """Render with the meter's response keys."""
        response: dict[str, Any] = {
            meter.allowed_key: self.allowed,
            "message": self.message,
            meter.remaining_key: self.remaining,
            "planLimit": self.plan_limit,
            meter.used_key: self.used,
            "billingInterval": self.billing_interval,
        }
        if self.window_start is not None:
            response["periodStart"] = self.window_start.isoformat()
        if self.window_end is not None:
            response["periodEnd"] = self.window_end.isoformat()
        return response


class ValidationResult(BaseModel):
    """Advisory pre-check for a requested quantity."""

    allowed: bool
    message: str
    suggestion: str | None = None
    warning: str | None = None
    limits: LimitStatus

    def as_response(self, meter: UsageMeter) -> dict[str, Any]:
        response = self.limits.as_response(meter)
        response.pop(meter.allowed_key)
        response.update(
            {
                "canProceed": self.allowed,
                "message": self.message,
                "suggestion": self.suggestion,
                "warning": self.warning,
            }
        )
        return response


class RecordResult(BaseModel):
    """Outcome of an authoritative usage write."""

    success: bool
    error: str | None = None
    updated_limits: LimitStatus

    def as_response(self, meter: UsageMeter) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": self.success,
            "updatedLimits": self.updated_limits.as_response(meter),
        }
        if self.error:
            response["error"] = self.error
        return response


class UploadValidation(BaseModel):
    """Outcome of checking a file size against the plan's upload limit."""

    allowed: bool
    message: str
    size_mb: float
    upload_limit_mb: int | None = None
    plan_name: str | None = None

    def as_response(self) -> dict[str, Any]:
        return {
            "canUpload": self.allowed,
            "message": self.message,
            "sizeMb": self.size_mb,
            "uploadLimitMb": self.upload_limit_mb,
            "planName": self.plan_name,
        }
