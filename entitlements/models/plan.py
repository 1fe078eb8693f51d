"""
Subscription plan catalog models.

Plans are created and edited out-of-band (catalog management) and are
read-only to the entitlement engine.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BillingInterval(str, Enum):
    """Billing interval of a paid plan (free plans have none)."""

    MONTH = "month"
    YEAR = "year"


class PlanFeature(str, Enum):
    """Boolean feature flags carried by a plan."""

    PREMIUM_TEMPLATES = "premium_templates"
    ARCHIVE_ACCESS = "archive_access"


class Plan(BaseModel):
    """
    Catalog entry defining entitlement allowances and price.

    Nullable allowances mean unlimited.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    upload_limit_mb: int = Field(..., ge=0)
    transcription_mins: int | None = Field(default=None, ge=0)
    summarization_limit: int | None = Field(default=None, ge=0)
    doc_export_limit: int | None = Field(default=None, ge=0)
    billing_interval: BillingInterval | None = None
    price: float | None = None
    paddle_price_id: str | None = None
    premium_templates: bool = False
    archive_access: bool = False

    @property
    def is_paid(self) -> bool:
        return self.billing_interval is not None

    def has_feature(self, feature: PlanFeature) -> bool:
        return bool(getattr(self, feature.value))

    def summary(self) -> dict:
        """Public plan summary (no catalog identifiers)."""
        return {
            "name": self.name,
            "upload_limit_mb": self.upload_limit_mb,
            "transcription_mins": self.transcription_mins,
            "summarization_limit": self.summarization_limit,
            "doc_export_limit": self.doc_export_limit,
            "billing_interval": self.billing_interval.value if self.billing_interval else None,
            "premium_templates": self.premium_templates,
            "archive_access": self.archive_access,
        }


class PlanCreate(BaseModel):
    """Schema for seeding a catalog plan."""

    name: str = Field(..., min_length=1, max_length=100)
    upload_limit_mb: int = Field(..., ge=0)
    transcription_mins: int | None = Field(default=None, ge=0)
    summarization_limit: int | None = Field(default=None, ge=0)
    doc_export_limit: int | None = Field(default=None, ge=0)
    billing_interval: BillingInterval | None = None
    price: float | None = Field(default=None, ge=0)
    paddle_price_id: str | None = None
    premium_templates: bool = False
    archive_access: bool = False
