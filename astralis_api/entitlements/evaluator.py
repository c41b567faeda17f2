from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from astralis_api.billing.store import SubscriptionStore
from astralis_api.core.logging import get_logger
from astralis_api.entitlements.identity import Identity
from astralis_api.usage.counter import UsageCounter

logger = get_logger("entitlements")


class Tier(str, Enum):
    GUEST = "guest"
    FREE = "free"
    PREMIUM = "premium"


@dataclass(frozen=True)
class Evaluation:
    mode: Tier
    remaining: int | None
    used: int | None
    limit: int
    upsell: bool = False

    @property
    def premium(self) -> bool:
        return self.mode is Tier.PREMIUM


@dataclass(frozen=True)
class AdmitDecision:
    mode: Tier
    remaining: int | None
    used: int | None
    upsell: bool


class AdmissionDenied(Exception):
    code = "ADMISSION_DENIED"

    def __init__(self, mode: Tier, limit: int) -> None:
        super().__init__(self.code)
        self.mode = mode
        self.limit = limit
        self.remaining = 0


class QuotaExhausted(AdmissionDenied):
    code = "FREE_LIMIT_REACHED"


class PremiumRequired(AdmissionDenied):
    code = "PREMIUM_REQUIRED"


class EntitlementEvaluator:
    """Decides, per request, which tier applies and whether the call may proceed.

    Precedence: an entitled subscription wins outright and never touches a
    counter; otherwise the identity's own lifetime counter is consumed through a
    single conditional increment. A denial never increments.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        counter: UsageCounter,
        *,
        free_limit: int,
        upsell_threshold: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._counter = counter
        self._free_limit = free_limit
        self._upsell_threshold = upsell_threshold
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def free_limit(self) -> int:
        return self._free_limit

    async def _is_premium(self, identity: Identity) -> bool:
        if not identity.is_authenticated:
            return False
        record = await self._store.get_by_user(identity.value)
        return record is not None and record.is_entitled(self._clock())

    def _upsell(self, remaining: int) -> bool:
        return remaining <= self._upsell_threshold

    async def evaluate(self, identity: Identity) -> Evaluation:
        if await self._is_premium(identity):
            return Evaluation(mode=Tier.PREMIUM, remaining=None, used=None, limit=self._free_limit)

        mode = Tier.FREE if identity.is_authenticated else Tier.GUEST
        used = await self._counter.get_count(identity)
        remaining = max(0, self._free_limit - used)
        return Evaluation(
            mode=mode,
            remaining=remaining,
            used=used,
            limit=self._free_limit,
            upsell=self._upsell(remaining),
        )

    async def admit(self, identity: Identity) -> AdmitDecision:
        if await self._is_premium(identity):
            return AdmitDecision(mode=Tier.PREMIUM, remaining=None, used=None, upsell=False)

        mode = Tier.FREE if identity.is_authenticated else Tier.GUEST
        if self._free_limit == 0:
            raise PremiumRequired(mode, self._free_limit)

        consumption = await self._counter.consume(identity, self._free_limit)
        if not consumption.admitted:
            logger.info(
                "entitlements.quota_exhausted",
                extra={"component": "entitlements", "mode": mode, "used": consumption.used},
            )
            raise QuotaExhausted(mode, self._free_limit)

        remaining = max(0, self._free_limit - consumption.used)
        return AdmitDecision(
            mode=mode,
            remaining=remaining,
            used=consumption.used,
            upsell=self._upsell(remaining),
        )
