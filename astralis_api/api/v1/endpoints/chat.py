from fastapi import APIRouter, Depends, Request, Response, status

from astralis_api.api.dependencies import get_chat_responder, get_evaluator
from astralis_api.api.v1.schemas.chat import ChatIn, ChatOut, QuotaOut
from astralis_api.core.errors import ApiError, sanitize_error
from astralis_api.core.logging import get_logger
from astralis_api.core.settings import get_settings
from astralis_api.core.supabase_jwt import VerifiedSupabaseAuth, optional_supabase_auth
from astralis_api.entitlements.evaluator import AdmissionDenied, EntitlementEvaluator
from astralis_api.entitlements.identity import Identity, is_valid_guest_id, new_guest_id
from astralis_api.services.responder import ChatResponder, ResponderError

router = APIRouter()
optional_auth_dependency = Depends(optional_supabase_auth)
logger = get_logger("api.chat")


def _set_guest_cookie(response: Response, guest_id: str) -> None:
    settings = get_settings()
    response.set_cookie(
        settings.GUEST_COOKIE_NAME,
        guest_id,
        max_age=settings.GUEST_COOKIE_MAX_AGE_SECONDS,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.GUEST_COOKIE_SECURE,
    )


@router.get("/chat/quota")
async def chat_quota(
    request: Request,
    response: Response,
    auth: VerifiedSupabaseAuth | None = optional_auth_dependency,
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
) -> QuotaOut:
    if auth is not None:
        identity = Identity.user(auth.user_id)
    else:
        guest_id = request.cookies.get(get_settings().GUEST_COOKIE_NAME)
        if not is_valid_guest_id(guest_id):
            guest_id = new_guest_id()
        identity = Identity.guest(guest_id)
        _set_guest_cookie(response, guest_id)

    evaluation = await evaluator.evaluate(identity)
    return QuotaOut(
        mode=evaluation.mode.value,
        premium=evaluation.premium,
        remaining=evaluation.remaining,
        used=evaluation.used,
        free_limit=evaluation.limit,
        upsell=evaluation.upsell,
    )


@router.post("/chat")
async def chat(
    body: ChatIn,
    request: Request,
    auth: VerifiedSupabaseAuth | None = optional_auth_dependency,
    evaluator: EntitlementEvaluator = Depends(get_evaluator),
    responder: ChatResponder | None = Depends(get_chat_responder),
) -> ChatOut:
    # Refuse before admission so an outage never burns quota.
    if responder is None:
        raise ApiError(status.HTTP_503_SERVICE_UNAVAILABLE, "CHAT_UNAVAILABLE")

    if auth is not None:
        identity = Identity.user(auth.user_id)
    else:
        guest_id = request.cookies.get(get_settings().GUEST_COOKIE_NAME) or body.guest_id
        if not is_valid_guest_id(guest_id):
            raise ApiError(
                status.HTTP_400_BAD_REQUEST,
                "GUEST_ID_MISSING",
                detail="A guest id is required for guest mode.",
            )
        identity = Identity.guest(guest_id)

    try:
        decision = await evaluator.admit(identity)
    except AdmissionDenied as exc:
        raise ApiError(
            status.HTTP_402_PAYMENT_REQUIRED,
            exc.code,
            upgrade_required=True,
            free_limit=exc.limit,
            mode=exc.mode.value,
            remaining=exc.remaining,
        ) from None

    try:
        reply = await responder.reply(
            body.message,
            history=[turn.model_dump() for turn in body.history],
            mode=decision.mode.value,
        )
    except ResponderError as exc:
        logger.error(
            "chat.responder_failed",
            extra={
                "component": "chat",
                "mode": decision.mode,
                "last_error": sanitize_error(exc, default_message="Assistant service failed."),
            },
        )
        raise ApiError(status.HTTP_502_BAD_GATEWAY, "CHAT_UPSTREAM_FAILED") from exc

    return ChatOut(
        reply=reply,
        mode=decision.mode.value,
        remaining=decision.remaining,
        free_limit=evaluator.free_limit,
        upsell=decision.upsell,
    )
