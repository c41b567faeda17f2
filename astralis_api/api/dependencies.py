from functools import lru_cache

from fastapi import Depends

from astralis_api.billing.catalog import PlanCatalog, build_plan_catalog
from astralis_api.billing.checkout import CheckoutIntentFactory
from astralis_api.billing.event_log import (
    BillingEventLog,
    InMemoryBillingEventLog,
    SupabaseBillingEventLog,
)
from astralis_api.billing.ingestor import EventIngestor
from astralis_api.billing.store import (
    InMemorySubscriptionStore,
    SubscriptionStore,
    SupabaseSubscriptionStore,
)
from astralis_api.core.settings import get_settings
from astralis_api.entitlements.evaluator import EntitlementEvaluator
from astralis_api.services.responder import ChatResponder, UpstreamChatResponder
from astralis_api.usage.counter import InMemoryUsageCounter, SupabaseUsageCounter, UsageCounter


def _memory_backend() -> bool:
    return get_settings().ENTITLEMENT_BACKEND == "memory"


@lru_cache
def get_plan_catalog() -> PlanCatalog:
    return build_plan_catalog()


@lru_cache
def get_subscription_store() -> SubscriptionStore:
    return InMemorySubscriptionStore() if _memory_backend() else SupabaseSubscriptionStore()


@lru_cache
def get_usage_counter() -> UsageCounter:
    return InMemoryUsageCounter() if _memory_backend() else SupabaseUsageCounter()


@lru_cache
def get_event_log() -> BillingEventLog:
    return InMemoryBillingEventLog() if _memory_backend() else SupabaseBillingEventLog()


def get_chat_responder() -> ChatResponder | None:
    settings = get_settings()
    if not settings.CHAT_RESPONDER_URL:
        return None
    return UpstreamChatResponder(
        settings.CHAT_RESPONDER_URL,
        timeout_seconds=settings.CHAT_RESPONDER_TIMEOUT_SECONDS,
    )


def get_evaluator(
    store: SubscriptionStore = Depends(get_subscription_store),
    counter: UsageCounter = Depends(get_usage_counter),
) -> EntitlementEvaluator:
    settings = get_settings()
    return EntitlementEvaluator(
        store,
        counter,
        free_limit=settings.FREE_LIMIT,
        upsell_threshold=settings.UPSELL_THRESHOLD,
    )


def get_ingestor(
    store: SubscriptionStore = Depends(get_subscription_store),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    event_log: BillingEventLog = Depends(get_event_log),
) -> EventIngestor:
    settings = get_settings()
    return EventIngestor(
        store,
        catalog,
        event_log,
        signing_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
    )


def get_checkout_factory(catalog: PlanCatalog = Depends(get_plan_catalog)) -> CheckoutIntentFactory:
    settings = get_settings()
    return CheckoutIntentFactory(
        catalog,
        app_tag=settings.CHECKOUT_APP_TAG,
        site_url=settings.SITE_URL,
        trial_days=settings.STRIPE_TRIAL_DAYS,
    )


def reset_backends() -> None:
    for provider in (get_plan_catalog, get_subscription_store, get_usage_counter, get_event_log):
        provider.cache_clear()
