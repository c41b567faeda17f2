import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from astralis_api.core.supabase_rest import (
    insert_billing_event_service,
    select_billing_events_service,
)


class BillingEventStatus(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class BillingEventEntry:
    stripe_event_id: str
    event_type: str
    status: BillingEventStatus
    user_id: str | None = None
    stripe_customer_id: str | None = None
    error: str | None = None
    occurred_at: datetime | None = None
    processed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["status"] = self.status.value
        for key in ("occurred_at", "processed_at"):
            value = row[key]
            row[key] = value.isoformat().replace("+00:00", "Z") if value else None
        return row


class BillingEventLog(Protocol):
    async def record(self, entry: BillingEventEntry) -> None:
        ...

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        ...


class InMemoryBillingEventLog:
    """Keyed on (stripe_event_id, status) like the billing_events unique index.

    A redelivery overwrites the earlier row and moves it to the newest position.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[tuple[str, str], dict[str, Any]] = {}

    async def record(self, entry: BillingEventEntry) -> None:
        row = entry.as_row()
        key = (row["stripe_event_id"], row["status"])
        with self._lock:
            self._rows.pop(key, None)
            self._rows[key] = row

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            rows = [row for row in self._rows.values() if row["user_id"] == user_id]
        return list(reversed(rows))[:limit]


class SupabaseBillingEventLog:
    async def record(self, entry: BillingEventEntry) -> None:
        await insert_billing_event_service(entry.as_row())

    async def list_for_user(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return await select_billing_events_service(user_id, limit=limit)
