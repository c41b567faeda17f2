import threading
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from astralis_api.billing.models import (
    SubscriptionKey,
    SubscriptionPatch,
    SubscriptionRecord,
    SubscriptionStatus,
    UpsertResult,
)
from astralis_api.core.errors import StoreError
from astralis_api.core.supabase_rest import (
    rpc_upsert_user_subscription_service,
    select_subscription_by_customer_service,
    select_subscription_by_user_service,
)


class SubscriptionStore(Protocol):
    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        ...

    async def get_by_customer(self, customer_id: str) -> SubscriptionRecord | None:
        ...

    async def upsert(self, key: SubscriptionKey, patch: SubscriptionPatch) -> UpsertResult:
        ...


def supersedes(
    stored_at: datetime | None,
    stored_status: SubscriptionStatus | None,
    incoming_at: datetime,
    incoming_status: SubscriptionStatus | None,
) -> bool:
    """Return True when an event at ``incoming_at`` may overwrite the stored state.

    Ties are applied so redeliveries stay idempotent, except that a tie never
    lifts a canceled row back to another status.
    """
    if stored_at is None:
        return True
    if incoming_at != stored_at:
        return incoming_at > stored_at
    return not (
        stored_status is SubscriptionStatus.CANCELED
        and incoming_status is not SubscriptionStatus.CANCELED
    )


def _isoformat(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _isoformat(value)
    return value


class InMemorySubscriptionStore:
    """Process-local store with the same merge rules as ``upsert_user_subscription``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: list[SubscriptionRecord] = []

    def _find_by_user(self, user_id: str) -> int | None:
        for index, row in enumerate(self._rows):
            if row.user_id == user_id:
                return index
        return None

    def _find_by_customer(self, customer_id: str, *, orphan_only: bool = False) -> int | None:
        found: int | None = None
        for index, row in enumerate(self._rows):
            if row.stripe_customer_id != customer_id:
                continue
            if orphan_only and row.user_id is not None:
                continue
            # Prefer a row that already belongs to a user.
            if found is None or (self._rows[found].user_id is None and row.user_id is not None):
                found = index
        return found

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        with self._lock:
            index = self._find_by_user(user_id)
            return self._rows[index] if index is not None else None

    async def get_by_customer(self, customer_id: str) -> SubscriptionRecord | None:
        with self._lock:
            index = self._find_by_customer(customer_id)
            return self._rows[index] if index is not None else None

    async def upsert(self, key: SubscriptionKey, patch: SubscriptionPatch) -> UpsertResult:
        customer_id = key.customer_id or patch.stripe_customer_id
        now = datetime.now(UTC)

        with self._lock:
            index: int | None = None
            claim_user_id: str | None = None
            if key.user_id:
                index = self._find_by_user(key.user_id)
                if index is None and customer_id:
                    index = self._find_by_customer(customer_id, orphan_only=True)
                    claim_user_id = key.user_id
            elif customer_id:
                index = self._find_by_customer(customer_id)

            if index is None:
                current = SubscriptionRecord(
                    user_id=key.user_id,
                    status=patch.initial_status or SubscriptionStatus.UNKNOWN,
                )
            else:
                current = self._rows[index]

            updates: dict[str, Any] = {"updated_at": now}
            if claim_user_id:
                updates["user_id"] = claim_user_id
            replace = patch.replace_linkage and (
                current.last_event_at is None or patch.occurred_at >= current.last_event_at
            )
            for field_name, value in patch.linkage().items():
                if replace or getattr(current, field_name) is None:
                    updates[field_name] = value

            applied = True
            if patch.state:
                applied = supersedes(
                    current.last_event_at,
                    current.status if index is not None else None,
                    patch.occurred_at,
                    patch.state.get("status"),
                )
                if applied:
                    updates.update(patch.state)
                    updates["last_event_at"] = patch.occurred_at
                    updates["last_event_id"] = patch.event_id

            record = current.model_copy(update=updates)
            if index is None:
                self._rows.append(record)
            else:
                self._rows[index] = record
            return UpsertResult(applied=applied, record=record)


class SupabaseSubscriptionStore:
    """Reads through PostgREST and writes through the ``upsert_user_subscription`` RPC."""

    async def get_by_user(self, user_id: str) -> SubscriptionRecord | None:
        row = await select_subscription_by_user_service(user_id)
        return SubscriptionRecord.model_validate(row) if row else None

    async def get_by_customer(self, customer_id: str) -> SubscriptionRecord | None:
        row = await select_subscription_by_customer_service(customer_id)
        return SubscriptionRecord.model_validate(row) if row else None

    async def upsert(self, key: SubscriptionKey, patch: SubscriptionPatch) -> UpsertResult:
        payload = {
            "p_user_id": key.user_id,
            "p_customer_id": key.customer_id or patch.stripe_customer_id,
            "p_linkage": patch.linkage(),
            "p_replace_linkage": patch.replace_linkage,
            "p_state": {name: _json_value(value) for name, value in patch.state.items()},
            "p_initial_status": patch.initial_status.value if patch.initial_status else None,
            "p_event_at": _isoformat(patch.occurred_at),
            "p_event_id": patch.event_id,
        }
        result = await rpc_upsert_user_subscription_service(payload)

        applied = result.get("applied")
        if not isinstance(applied, bool):
            raise StoreError("Invalid upsert subscription response from Supabase.")
        row = result.get("record")
        record = SubscriptionRecord.model_validate(row) if isinstance(row, dict) else None
        return UpsertResult(applied=applied, record=record)
