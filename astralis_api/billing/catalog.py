from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType

from astralis_api.core.settings import PlanCatalogEntry, get_settings


@dataclass(frozen=True)
class PlanEntry:
    price_id: str
    slug: str
    name: str


class PlanCatalog:
    """Maps Stripe price ids to plan slugs and display names.

    Several prices may share a slug (per-currency or legacy prices). Checkout
    sells one of them: the entry flagged ``checkout``, else the first one listed.
    """

    def __init__(self, entries: Mapping[str, PlanCatalogEntry | Mapping[str, object]]) -> None:
        by_price: dict[str, PlanEntry] = {}
        checkout_by_slug: dict[str, PlanEntry] = {}
        flagged_slugs: set[str] = set()
        for price_id, raw in entries.items():
            entry = raw if isinstance(raw, PlanCatalogEntry) else PlanCatalogEntry.model_validate(raw)
            price_key = price_id.strip()
            slug = entry.slug.strip().lower()
            if not price_key or not slug:
                raise ValueError("Plan catalog entries need a price id and a slug")
            plan = PlanEntry(price_id=price_key, slug=slug, name=entry.name.strip() or slug)
            by_price[price_key] = plan

            if entry.checkout:
                if slug in flagged_slugs:
                    raise ValueError(f"Plan slug '{slug}' has more than one checkout price")
                flagged_slugs.add(slug)
                checkout_by_slug[slug] = plan
            elif slug not in checkout_by_slug:
                checkout_by_slug[slug] = plan

        self._by_price = MappingProxyType(by_price)
        self._checkout_by_slug = MappingProxyType(checkout_by_slug)

    def resolve_price_id(self, price_id: str | None) -> PlanEntry | None:
        if not price_id:
            return None
        return self._by_price.get(price_id.strip())

    def price_id_for_slug(self, slug: str | None) -> str | None:
        if not slug:
            return None
        plan = self._checkout_by_slug.get(slug.strip().lower())
        return plan.price_id if plan else None

    def slugs(self) -> list[str]:
        return sorted(self._checkout_by_slug)


def build_plan_catalog() -> PlanCatalog:
    return PlanCatalog(get_settings().PLAN_CATALOG)
