from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from astralis_api.api.v1.router import router as v1_router
from astralis_api.core.errors import ApiError
from astralis_api.core.logging import configure_logging
from astralis_api.core.settings import get_settings
from astralis_api.middleware.rate_limit import RateLimitMiddleware
from astralis_api.middleware.request_id import RequestIDMiddleware

API_PREFIX = "/api/v1"
WEBHOOK_PATH = f"{API_PREFIX}/billing/webhook"

configure_logging()
settings = get_settings()

app = FastAPI(title="Astralis API", version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)
if settings.API_RATE_LIMIT_ENABLED:
    app.add_middleware(
        RateLimitMiddleware,
        max_requests_per_minute=settings.API_RATE_LIMIT_PER_MINUTE,
        guest_cookie_name=settings.GUEST_COOKIE_NAME,
        exempt_paths=(WEBHOOK_PATH,),
    )
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.as_body())


app.include_router(v1_router, prefix=API_PREFIX)


@app.get("/healthz")
def root_healthz() -> dict[str, str]:
    return {"status": "ok"}
