import threading
from dataclasses import dataclass
from typing import Protocol

from astralis_api.core.errors import StoreError
from astralis_api.core.supabase_rest import (
    rpc_consume_usage_service,
    rpc_increment_usage_service,
    select_usage_count_service,
)
from astralis_api.entitlements.identity import Identity


@dataclass(frozen=True)
class UsageConsumption:
    admitted: bool
    used: int


class UsageCounter(Protocol):
    async def get_count(self, identity: Identity) -> int:
        ...

    async def increment_and_get(self, identity: Identity) -> int:
        ...

    async def consume(self, identity: Identity, limit: int) -> UsageConsumption:
        ...


class InMemoryUsageCounter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: dict[tuple[str, str], int] = {}

    async def get_count(self, identity: Identity) -> int:
        with self._lock:
            return self._counts.get(identity.key, 0)

    async def increment_and_get(self, identity: Identity) -> int:
        with self._lock:
            used = self._counts.get(identity.key, 0) + 1
            self._counts[identity.key] = used
            return used

    async def consume(self, identity: Identity, limit: int) -> UsageConsumption:
        with self._lock:
            used = self._counts.get(identity.key, 0)
            if used >= limit:
                return UsageConsumption(admitted=False, used=used)
            self._counts[identity.key] = used + 1
            return UsageConsumption(admitted=True, used=used + 1)


class SupabaseUsageCounter:
    """Counters live in ``guest_usage_lifetime`` / ``user_usage_lifetime``.

    Every write is a single ``INSERT ... ON CONFLICT DO UPDATE`` inside an RPC,
    so concurrent requests from one identity cannot both pass the limit.
    """

    async def get_count(self, identity: Identity) -> int:
        return await select_usage_count_service(identity.kind.value, identity.value)

    async def increment_and_get(self, identity: Identity) -> int:
        return await rpc_increment_usage_service(identity.kind.value, identity.value)

    async def consume(self, identity: Identity, limit: int) -> UsageConsumption:
        result = await rpc_consume_usage_service(identity.kind.value, identity.value, limit)
        admitted = result.get("admitted")
        used = result.get("used")
        if not isinstance(admitted, bool) or not isinstance(used, int) or used < 0:
            raise StoreError("Invalid consume usage response from Supabase.")
        return UsageConsumption(admitted=admitted, used=used)
