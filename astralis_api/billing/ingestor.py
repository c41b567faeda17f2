import json
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import stripe

from astralis_api.billing.catalog import PlanCatalog
from astralis_api.billing.event_log import BillingEventEntry, BillingEventLog, BillingEventStatus
from astralis_api.billing.models import (
    SubscriptionKey,
    SubscriptionPatch,
    SubscriptionStatus,
    WebhookEvent,
    normalize_provider_status,
)
from astralis_api.billing.store import SubscriptionStore
from astralis_api.core.errors import StoreError, sanitize_error
from astralis_api.core.logging import get_logger

logger = get_logger("billing.webhook")

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
HANDLED_EVENT_TYPES = frozenset(
    {CHECKOUT_COMPLETED, SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}
)

GUEST_PLACEHOLDER = "guest"


class IngestOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    UNLINKABLE = "unlinkable"
    STORE_FAILED = "store_failed"


class RejectReason(str, Enum):
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"


class WebhookRejected(Exception):
    def __init__(self, reason: RejectReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


class WebhookNotConfigured(RuntimeError):
    pass


@dataclass(frozen=True)
class Ack:
    event_id: str
    event_type: str
    outcome: IngestOutcome
    warning: str | None = None


class StoreFailureCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0
        self._last_failure_at: datetime | None = None

    def record(self) -> None:
        with self._lock:
            self._count += 1
            self._last_failure_at = datetime.now(UTC)

    def snapshot(self) -> tuple[int, datetime | None]:
        with self._lock:
            return self._count, self._last_failure_at

    def reset(self) -> None:
        with self._lock:
            self._count = 0
            self._last_failure_at = None


webhook_store_failures = StoreFailureCounter()


def resolve_user_id(*candidates: Any) -> str | None:
    """Return the first candidate that is a real user id.

    Blanks, the ``guest`` placeholder and anything that is not a UUID cannot be
    linked to an account.
    """
    for candidate in candidates:
        if not isinstance(candidate, str):
            continue
        value = candidate.strip()
        if not value or value.lower() == GUEST_PLACEHOLDER:
            continue
        try:
            return str(uuid.UUID(value))
        except ValueError:
            continue
    return None


def _stripe_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    try:
        return datetime.fromtimestamp(value, UTC)
    except (OverflowError, OSError, ValueError):
        return None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = subscription.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _price_id(subscription: dict[str, Any]) -> str | None:
    item = _first_item(subscription)
    price = item.get("price")
    return _stripe_id(price)


def _current_period_end(subscription: dict[str, Any]) -> datetime | None:
    # Newer API versions moved the billing period onto the subscription item.
    top_level = _timestamp(subscription.get("current_period_end"))
    if top_level is not None:
        return top_level
    return _timestamp(_first_item(subscription).get("current_period_end"))


class EventIngestor:
    """Verifies Stripe webhook deliveries and folds them into the subscription store."""

    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        event_log: BillingEventLog,
        *,
        signing_secret: str | None,
        tolerance_seconds: int = 300,
        failures: StoreFailureCounter | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._event_log = event_log
        self._signing_secret = signing_secret
        self._tolerance_seconds = tolerance_seconds
        self._failures = failures or webhook_store_failures

    async def apply(self, raw_payload: bytes, signature_header: str | None) -> Ack:
        event = self.parse_event(raw_payload, signature_header)
        return await self.apply_event(event)

    def parse_event(self, raw_payload: bytes, signature_header: str | None) -> WebhookEvent:
        secret = (self._signing_secret or "").strip()
        if not secret:
            raise WebhookNotConfigured("STRIPE_WEBHOOK_SECRET is not configured")

        try:
            payload_text = raw_payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookRejected(RejectReason.MALFORMED_PAYLOAD) from None

        if not signature_header or not signature_header.strip():
            raise WebhookRejected(RejectReason.INVALID_SIGNATURE)
        try:
            stripe.WebhookSignature.verify_header(
                payload_text,
                signature_header,
                secret,
                self._tolerance_seconds,
            )
        except stripe.SignatureVerificationError:
            raise WebhookRejected(RejectReason.INVALID_SIGNATURE) from None

        try:
            body = json.loads(payload_text)
        except ValueError:
            raise WebhookRejected(RejectReason.MALFORMED_PAYLOAD) from None
        if not isinstance(body, dict):
            raise WebhookRejected(RejectReason.MALFORMED_PAYLOAD)

        event_id = body.get("id")
        event_type = body.get("type")
        if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str):
            raise WebhookRejected(RejectReason.MALFORMED_PAYLOAD)

        data = body.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=_timestamp(body.get("created")),
            payload=obj if isinstance(obj, dict) else {},
        )

    async def apply_event(self, event: WebhookEvent) -> Ack:
        if event.event_type not in HANDLED_EVENT_TYPES:
            logger.info(
                "billing.webhook.ignored",
                extra={"component": "billing", "event_id": event.event_id, "event_type": event.event_type},
            )
            await self._record(event, BillingEventStatus.IGNORED)
            return Ack(event.event_id, event.event_type, IngestOutcome.IGNORED)

        if event.occurred_at is None or not event.payload:
            raise WebhookRejected(RejectReason.MALFORMED_PAYLOAD)

        if event.event_type == CHECKOUT_COMPLETED:
            return await self._on_checkout_completed(event)
        return await self._on_subscription_changed(event)

    async def _on_checkout_completed(self, event: WebhookEvent) -> Ack:
        session = event.payload
        user_id = resolve_user_id(session.get("client_reference_id"), _metadata(session).get("user_id"))
        customer_id = _stripe_id(session.get("customer"))
        if user_id is None:
            return await self._unlinkable(event, customer_id, "checkout session has no linkable user id")

        patch = SubscriptionPatch(
            occurred_at=event.occurred_at,
            event_id=event.event_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=_stripe_id(session.get("subscription")),
            stripe_checkout_session_id=_stripe_id(session.get("id")),
            initial_status=SubscriptionStatus.PENDING,
            # A new checkout may come from a fresh Stripe customer after a cancellation.
            replace_linkage=True,
        )
        return await self._upsert(event, SubscriptionKey(user_id=user_id, customer_id=customer_id), patch)

    async def _on_subscription_changed(self, event: WebhookEvent) -> Ack:
        subscription = event.payload
        user_id = resolve_user_id(_metadata(subscription).get("user_id"))
        customer_id = _stripe_id(subscription.get("customer"))
        if user_id is None and customer_id is None:
            return await self._unlinkable(event, None, "subscription has no user id and no customer id")

        price_id = _price_id(subscription)
        plan = self._catalog.resolve_price_id(price_id)
        if price_id and plan is None:
            logger.warning(
                "billing.webhook.unknown_price",
                extra={"component": "billing", "event_id": event.event_id, "price_id": price_id},
            )

        provider_status = subscription.get("status")
        state: dict[str, Any] = {
            "stripe_price_id": price_id,
            "plan_slug": plan.slug if plan else None,
            "plan_name": plan.name if plan else None,
            "stripe_status": provider_status if isinstance(provider_status, str) else None,
        }
        subscription_id = _stripe_id(subscription.get("id"))
        if subscription_id:
            state["stripe_subscription_id"] = subscription_id
        if customer_id:
            state["stripe_customer_id"] = customer_id
        if event.event_type == SUBSCRIPTION_DELETED:
            state.update(
                status=SubscriptionStatus.CANCELED,
                current_period_end=None,
                canceled_at=_timestamp(subscription.get("canceled_at")) or event.occurred_at,
            )
        else:
            state.update(
                status=normalize_provider_status(provider_status),
                current_period_end=_current_period_end(subscription),
                canceled_at=_timestamp(subscription.get("canceled_at")),
            )

        patch = SubscriptionPatch(
            occurred_at=event.occurred_at,
            event_id=event.event_id,
            stripe_customer_id=customer_id,
            state=state,
        )
        return await self._upsert(event, SubscriptionKey(user_id=user_id, customer_id=customer_id), patch)

    async def _unlinkable(self, event: WebhookEvent, customer_id: str | None, warning: str) -> Ack:
        logger.warning(
            "billing.webhook.unlinkable",
            extra={
                "component": "billing",
                "event_id": event.event_id,
                "event_type": event.event_type,
                "stripe_customer_id": customer_id,
            },
        )
        await self._record(event, BillingEventStatus.SKIPPED, customer_id=customer_id, error=warning)
        return Ack(event.event_id, event.event_type, IngestOutcome.UNLINKABLE, warning=warning)

    async def _upsert(self, event: WebhookEvent, key: SubscriptionKey, patch: SubscriptionPatch) -> Ack:
        try:
            result = await self._store.upsert(key, patch)
        except StoreError as exc:
            error_text = sanitize_error(exc, default_message="Subscription upsert failed.")
            self._failures.record()
            logger.error(
                "billing.webhook.store_failed",
                extra={
                    "component": "billing",
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "user_id": key.user_id,
                    "stripe_customer_id": key.customer_id,
                    "last_error": error_text,
                },
            )
            await self._record(
                event,
                BillingEventStatus.FAILED,
                user_id=key.user_id,
                customer_id=key.customer_id,
                error=error_text,
            )
            return Ack(
                event.event_id,
                event.event_type,
                IngestOutcome.STORE_FAILED,
                warning="subscription could not be persisted",
            )

        record = result.record
        user_id = record.user_id if record and record.user_id else key.user_id
        if not result.applied:
            logger.info(
                "billing.webhook.stale",
                extra={
                    "component": "billing",
                    "event_id": event.event_id,
                    "event_type": event.event_type,
                    "occurred_at": event.occurred_at,
                    "last_event_at": record.last_event_at if record else None,
                },
            )
            await self._record(
                event,
                BillingEventStatus.SKIPPED,
                user_id=user_id,
                customer_id=key.customer_id,
                error="older than the stored subscription state",
            )
            return Ack(event.event_id, event.event_type, IngestOutcome.STALE)

        logger.info(
            "billing.webhook.applied",
            extra={
                "component": "billing",
                "event_id": event.event_id,
                "event_type": event.event_type,
                "user_id": user_id,
                "status": record.status if record else None,
            },
        )
        await self._record(event, BillingEventStatus.PROCESSED, user_id=user_id, customer_id=key.customer_id)
        return Ack(event.event_id, event.event_type, IngestOutcome.APPLIED)

    async def _record(
        self,
        event: WebhookEvent,
        status: BillingEventStatus,
        *,
        user_id: str | None = None,
        customer_id: str | None = None,
        error: str | None = None,
    ) -> None:
        entry = BillingEventEntry(
            stripe_event_id=event.event_id,
            event_type=event.event_type,
            status=status,
            user_id=user_id,
            stripe_customer_id=customer_id,
            error=error,
            occurred_at=event.occurred_at,
        )
        try:
            await self._event_log.record(entry)
        except StoreError as exc:
            logger.warning(
                "billing.event_log.write_failed",
                extra={
                    "component": "billing",
                    "event_id": event.event_id,
                    "last_error": sanitize_error(exc, default_message="Billing event log write failed."),
                },
            )
