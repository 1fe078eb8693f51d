"""
Typed views over Paddle Billing API payloads.

Paddle payloads vary between endpoints and event types; every optional field
is modelled as nullable and fallbacks are encoded as ordered alternatives on
the model instead of chained lookups at call sites.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from entitlements.utils.periods import parse_datetime


def _first(*candidates: str | None) -> str | None:
    for candidate in candidates:
        if candidate:
            return candidate
    return None


class _PaddleModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaddlePrice(_PaddleModel):
    id: str | None = None


class PaddleItem(_PaddleModel):
    price: PaddlePrice | None = None
    quantity: int | None = None


class PaddleBillingPeriod(_PaddleModel):
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @field_validator("starts_at", "ends_at", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_datetime(v)


class PaddleScheduledChange(_PaddleModel):
    action: str | None = None
    effective_at: datetime | None = None

    @field_validator("effective_at", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_datetime(v)


class PaddleCustomer(_PaddleModel):
    id: str | None = None
    paddle_id: str | None = None


class PaddleNextPayment(_PaddleModel):
    date: datetime | None = None

    @field_validator("date", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_datetime(v)


class PaddleCustomData(_PaddleModel):
    user_id: str | None = None
    plan_id: str | None = None


class PaddleReference(_PaddleModel):
    id: str | None = None


class PaddleLink(_PaddleModel):
    url: str | None = None


class PaddleSubscription(_PaddleModel):
    """Subscription entity as returned by the API and carried by webhooks."""

    id: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    customer_id: str | None = None
    customer: PaddleCustomer | None = None
    current_billing_period: PaddleBillingPeriod | None = None
    billing_period: PaddleBillingPeriod | None = None
    scheduled_change: PaddleScheduledChange | None = None
    next_payment: PaddleNextPayment | None = None
    next_billed_at: datetime | None = None
    items: list[PaddleItem | None] | None = None
    price: PaddlePrice | None = None
    paddle_price_id: str | None = None
    custom_data: PaddleCustomData | None = None
    transaction_id: str | None = None
    last_payment: PaddleReference | None = None

    @field_validator("next_billed_at", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @property
    def external_id(self) -> str | None:
        return _first(self.id, self.subscription_id)

    @property
    def price_id(self) -> str | None:
        first_item = self.items[0] if self.items else None
        item_price = first_item.price.id if first_item and first_item.price else None
        return _first(item_price, self.price.id if self.price else None, self.paddle_price_id)

    @property
    def resolved_customer_id(self) -> str | None:
        customer = self.customer or PaddleCustomer()
        return _first(self.customer_id, customer.id, customer.paddle_id)

    @property
    def period(self) -> PaddleBillingPeriod | None:
        """Current billing period (transactions carry it as ``billing_period``)."""
        return self.current_billing_period or self.billing_period

    @property
    def period_starts_at(self) -> datetime | None:
        return self.period.starts_at if self.period else None

    @property
    def period_ends_at(self) -> datetime | None:
        return self.period.ends_at if self.period else None

    @property
    def renewal_at(self) -> datetime | None:
        """End of the current period, falling back to the next payment date."""
        for candidate in (
            self.period_ends_at,
            self.next_payment.date if self.next_payment else None,
            self.next_billed_at,
        ):
            if candidate is not None:
                return candidate
        return None

    @property
    def scheduled_change_at(self) -> datetime | None:
        return self.scheduled_change.effective_at if self.scheduled_change else None

    @property
    def resolved_transaction_id(self) -> str | None:
        return _first(self.transaction_id, self.last_payment.id if self.last_payment else None)

    @property
    def user_id(self) -> str | None:
        return self.custom_data.user_id if self.custom_data else None

    @property
    def custom_plan_id(self) -> str | None:
        return self.custom_data.plan_id if self.custom_data else None


class PaddleUrlPayload(_PaddleModel):
    """Hosted URL returned by portal-session and update-payment-method calls."""

    url: str | None = None
    update_payment_method_url: str | None = None
    update_payment_method: PaddleLink | None = None
    urls: dict[str, Any] | None = None

    @property
    def resolved_url(self) -> str | None:
        nested = self.update_payment_method.url if self.update_payment_method else None
        general = None
        if self.urls and isinstance(self.urls.get("general"), dict):
            general = self.urls["general"].get("overview")
        return _first(self.url, self.update_payment_method_url, nested, general)


class PaddleEvent(_PaddleModel):
    """Webhook notification envelope."""

    event_id: str | None = None
    event_type: str
    occurred_at: datetime | None = None
    data: dict[str, Any]

    @field_validator("occurred_at", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @property
    def subscription(self) -> PaddleSubscription:
        return PaddleSubscription.model_validate(self.data)
