import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from astralis_api.api.dependencies import (
    get_checkout_factory,
    get_event_log,
    get_ingestor,
    get_subscription_store,
)
from astralis_api.api.v1.schemas.billing import (
    BillingEventOut,
    CheckoutIn,
    CheckoutOut,
    PortalOut,
    SubscriptionOut,
    WebhookAckOut,
)
from astralis_api.billing.checkout import (
    CheckoutIntentFactory,
    UnknownPlanError,
    create_checkout_session,
    create_portal_session,
)
from astralis_api.billing.event_log import BillingEventLog
from astralis_api.billing.ingestor import EventIngestor, WebhookNotConfigured, WebhookRejected
from astralis_api.billing.store import SubscriptionStore
from astralis_api.core.errors import ApiError, sanitize_error
from astralis_api.core.logging import get_logger
from astralis_api.core.settings import get_settings
from astralis_api.core.supabase_jwt import VerifiedSupabaseAuth, verify_supabase_auth

router = APIRouter()
supabase_auth_dependency = Depends(verify_supabase_auth)
logger = get_logger("api.billing")


@router.post("/billing/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    ingestor: EventIngestor = Depends(get_ingestor),
) -> WebhookAckOut:
    # Signatures are computed over the exact bytes Stripe sent.
    payload = await request.body()
    try:
        ack = await ingestor.apply(payload, stripe_signature)
    except WebhookRejected as exc:
        logger.warning(
            "billing.webhook.rejected",
            extra={"component": "billing", "reason": exc.reason, "payload_bytes": len(payload)},
        )
        raise ApiError(status.HTTP_400_BAD_REQUEST, exc.reason.value) from None
    except WebhookNotConfigured:
        logger.error("billing.webhook.not_configured", extra={"component": "billing"})
        raise ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, "WEBHOOK_NOT_CONFIGURED") from None

    return WebhookAckOut(outcome=ack.outcome.value, event_type=ack.event_type, warning=ack.warning)


@router.post("/billing/checkout")
async def create_checkout(
    body: CheckoutIn,
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    factory: CheckoutIntentFactory = Depends(get_checkout_factory),
) -> CheckoutOut:
    settings = get_settings()
    secret_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not secret_key:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Checkout is not configured.",
        )

    try:
        params = factory.build_session_params(
            user_id=auth.user_id,
            plan_slug=body.plan,
            next_path=body.next,
            customer_email=auth.email,
        )
    except UnknownPlanError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown plan.") from None

    try:
        session = await run_in_threadpool(create_checkout_session, secret_key, params)
    except stripe.StripeError as exc:
        logger.error(
            "billing.checkout.failed",
            extra={
                "component": "billing",
                "plan": body.plan,
                "last_error": sanitize_error(exc, default_message="Stripe checkout failed."),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create checkout session.",
        ) from exc

    url = session.get("url")
    session_id = session.get("id")
    if not isinstance(url, str) or not isinstance(session_id, str):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Invalid checkout session response from Stripe.",
        )

    logger.info(
        "billing.checkout.created",
        extra={"component": "billing", "user_id": auth.user_id, "plan": body.plan, "session_id": session_id},
    )
    return CheckoutOut(url=url, session_id=session_id)


@router.post("/billing/portal")
async def create_portal(
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> PortalOut:
    settings = get_settings()
    secret_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not secret_key:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="Billing portal is not configured.",
        )

    record = await store.get_by_user(auth.user_id)
    if record is None or not record.stripe_customer_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No billing customer.")

    params = {
        "customer": record.stripe_customer_id,
        "return_url": f"{settings.SITE_URL.strip().rstrip('/')}/account",
    }
    configuration = (settings.STRIPE_PORTAL_CONFIGURATION or "").strip()
    if configuration:
        params["configuration"] = configuration

    try:
        session = await run_in_threadpool(create_portal_session, secret_key, params)
    except stripe.StripeError as exc:
        logger.error(
            "billing.portal.failed",
            extra={
                "component": "billing",
                "user_id": auth.user_id,
                "last_error": sanitize_error(exc, default_message="Stripe portal failed."),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to create billing portal session.",
        ) from exc

    url = session.get("url")
    if not isinstance(url, str):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Invalid billing portal response from Stripe.",
        )

    logger.info("billing.portal.created", extra={"component": "billing", "user_id": auth.user_id})
    return PortalOut(url=url)


@router.get("/billing/subscription")
async def billing_subscription(
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> SubscriptionOut:
    user_id = auth.user_id
    record = await store.get_by_user(user_id)
    if record is None:
        return SubscriptionOut(user_id=user_id, entitled=False, status=None)

    return SubscriptionOut.model_validate(
        {
            **record.model_dump(
                include={
                    "plan_slug",
                    "plan_name",
                    "stripe_customer_id",
                    "stripe_subscription_id",
                    "current_period_end",
                    "canceled_at",
                    "updated_at",
                }
            ),
            "user_id": user_id,
            "entitled": record.is_entitled(),
            "status": record.status.value,
        }
    )


@router.get("/billing/events")
async def billing_events(
    limit: int = Query(default=20, ge=1, le=100),
    auth: VerifiedSupabaseAuth = supabase_auth_dependency,
    event_log: BillingEventLog = Depends(get_event_log),
) -> dict[str, list[BillingEventOut]]:
    rows = await event_log.list_for_user(auth.user_id, limit=limit)
    return {"events": [BillingEventOut.model_validate(row) for row in rows]}
