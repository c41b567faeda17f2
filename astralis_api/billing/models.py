from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

_PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def normalize_provider_status(value: str | None) -> SubscriptionStatus:
    """Collapse a Stripe subscription status onto the statuses we persist.

    ``past_due``, ``unpaid``, ``paused`` and anything Stripe adds later land on
    ``unknown``, which never entitles.
    """
    if not isinstance(value, str):
        return SubscriptionStatus.UNKNOWN
    return _PROVIDER_STATUS_MAP.get(value.strip().lower(), SubscriptionStatus.UNKNOWN)


def parse_status(value: str | None) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return SubscriptionStatus.UNKNOWN


class SubscriptionRecord(BaseModel):
    user_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_checkout_session_id: str | None = None
    stripe_price_id: str | None = None
    plan_slug: str | None = None
    plan_name: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.UNKNOWN
    stripe_status: str | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    last_event_at: datetime | None = None
    last_event_id: str | None = None
    updated_at: datetime | None = None

    def is_entitled(self, now: datetime | None = None) -> bool:
        if self.status not in ENTITLED_STATUSES:
            return False
        if self.current_period_end is None:
            return True
        return self.current_period_end > (now or datetime.now(UTC))


@dataclass(frozen=True)
class SubscriptionKey:
    user_id: str | None = None
    customer_id: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id and not self.customer_id:
            raise ValueError("SubscriptionKey needs a user_id or a customer_id")


@dataclass(frozen=True)
class SubscriptionPatch:
    """Fields an event wants to write.

    Linkage fields only fill gaps in the stored row unless ``replace_linkage``
    is set and ``occurred_at`` is not older than the stored watermark, in which
    case they overwrite. State fields are written only when ``occurred_at`` is
    not older than the stored watermark.
    """

    occurred_at: datetime
    event_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_checkout_session_id: str | None = None
    state: dict[str, Any] = field(default_factory=dict)

    # Only a patch that carries this status may create the row in the pending state.
    initial_status: SubscriptionStatus | None = None
    replace_linkage: bool = False

    def linkage(self) -> dict[str, str]:
        values = {
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_checkout_session_id": self.stripe_checkout_session_id,
        }
        return {key: value for key, value in values.items() if value}


@dataclass(frozen=True)
class UpsertResult:
    applied: bool
    record: SubscriptionRecord | None


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    occurred_at: datetime | None
    payload: dict[str, Any]
