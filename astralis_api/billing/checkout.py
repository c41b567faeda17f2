from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import stripe

from astralis_api.billing.catalog import PlanCatalog
from astralis_api.billing.ingestor import GUEST_PLACEHOLDER

DEFAULT_NEXT_PATH = "/chat"


class UnknownPlanError(ValueError):
    pass


@dataclass(frozen=True)
class CheckoutMetadata:
    """What the webhook handlers later read back to link a purchase to an account."""

    client_reference_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)
    subscription_metadata: dict[str, str] = field(default_factory=dict)


def safe_next_path(value: Any) -> str:
    if not isinstance(value, str):
        return DEFAULT_NEXT_PATH
    candidate = value.strip()
    if not candidate:
        return DEFAULT_NEXT_PATH
    lowered = candidate.lower()
    if "://" in lowered or candidate.startswith("//") or "\\" in candidate:
        return DEFAULT_NEXT_PATH
    return candidate if candidate.startswith("/") else f"/{candidate}"


class CheckoutIntentFactory:
    def __init__(
        self,
        catalog: PlanCatalog,
        *,
        app_tag: str,
        site_url: str,
        trial_days: int = 0,
    ) -> None:
        self._catalog = catalog
        self._app_tag = app_tag
        self._site_url = site_url.strip().rstrip("/")
        self._trial_days = max(0, trial_days)

    def build_checkout_metadata(self, user_id: str | None, plan_slug: str) -> CheckoutMetadata:
        linked_user_id = user_id.strip() if user_id and user_id.strip() else None
        metadata = {
            "app": self._app_tag,
            "plan": plan_slug,
            "user_id": linked_user_id or GUEST_PLACEHOLDER,
        }
        return CheckoutMetadata(
            client_reference_id=linked_user_id,
            metadata=metadata,
            subscription_metadata=dict(metadata),
        )

    def build_session_params(
        self,
        *,
        user_id: str | None,
        plan_slug: str,
        next_path: Any = None,
        customer_email: str | None = None,
    ) -> dict[str, Any]:
        slug = plan_slug.strip().lower()
        price_id = self._catalog.price_id_for_slug(slug)
        if price_id is None:
            raise UnknownPlanError(f"Unknown plan '{plan_slug}'")

        next_value = safe_next_path(next_path)
        separator = "&" if "?" in next_value else "?"
        contract = self.build_checkout_metadata(user_id, slug)

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "success_url": (
                f"{self._site_url}{next_value}{separator}paid=1&session_id={{CHECKOUT_SESSION_ID}}"
            ),
            "cancel_url": f"{self._site_url}/pricing?canceled=1&next={quote(next_value, safe='')}",
            "metadata": {**contract.metadata, "next": next_value},
            "subscription_data": {"metadata": contract.subscription_metadata},
        }
        if contract.client_reference_id:
            params["client_reference_id"] = contract.client_reference_id
        if customer_email:
            params["customer_email"] = customer_email
        if self._trial_days > 0:
            params["subscription_data"]["trial_period_days"] = self._trial_days
        return params


def create_checkout_session(api_key: str, params: dict[str, Any]) -> Any:
    """Blocking Stripe call; run it off the event loop."""
    return stripe.checkout.Session.create(api_key=api_key, **params)


def create_portal_session(api_key: str, params: dict[str, Any]) -> Any:
    """Blocking Stripe call; run it off the event loop."""
    return stripe.billing_portal.Session.create(api_key=api_key, **params)
