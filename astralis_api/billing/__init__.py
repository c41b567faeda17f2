from astralis_api.billing.catalog import PlanCatalog, PlanEntry, build_plan_catalog
from astralis_api.billing.checkout import CheckoutIntentFactory, CheckoutMetadata
from astralis_api.billing.ingestor import (
    Ack,
    EventIngestor,
    IngestOutcome,
    RejectReason,
    WebhookRejected,
)
from astralis_api.billing.models import SubscriptionRecord, SubscriptionStatus
from astralis_api.billing.store import (
    InMemorySubscriptionStore,
    SubscriptionStore,
    SupabaseSubscriptionStore,
)

__all__ = [
    "Ack",
    "CheckoutIntentFactory",
    "CheckoutMetadata",
    "EventIngestor",
    "InMemorySubscriptionStore",
    "IngestOutcome",
    "PlanCatalog",
    "PlanEntry",
    "RejectReason",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionStore",
    "SupabaseSubscriptionStore",
    "WebhookRejected",
    "build_plan_catalog",
]
