from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SubscriptionStatusValue = Literal["pending", "active", "trialing", "canceled", "unknown"]
BillingEventStatusValue = Literal["processed", "ignored", "skipped", "failed"]
IngestOutcomeValue = Literal["applied", "stale", "ignored", "unlinkable", "store_failed"]


class WebhookAckOut(BaseModel):
    received: bool = True
    outcome: IngestOutcomeValue
    event_type: str
    warning: str | None = None


class CheckoutIn(BaseModel):
    plan: str = Field(min_length=1, max_length=64)
    next: str | None = Field(default=None, max_length=512)


class CheckoutOut(BaseModel):
    url: str
    session_id: str


class PortalOut(BaseModel):
    url: str


class SubscriptionOut(BaseModel):
    user_id: str
    entitled: bool
    status: SubscriptionStatusValue | None
    plan_slug: str | None = None
    plan_name: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    updated_at: datetime | None = None


class BillingEventOut(BaseModel):
    stripe_event_id: str
    event_type: str
    status: BillingEventStatusValue
    error: str | None = None
    occurred_at: datetime | None = None
    processed_at: datetime | None = None
