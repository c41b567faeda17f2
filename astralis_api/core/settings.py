from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanCatalogEntry(BaseModel):
    slug: str
    name: str
    checkout: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=True, extra="ignore")

    APP_ENV: str = "development"
    APP_VERSION: str = "dev"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    API_CORS_ORIGINS: str = "http://localhost:3000"
    API_RATE_LIMIT_ENABLED: bool = True
    API_RATE_LIMIT_PER_MINUTE: int = 60
    SUPABASE_URL: str
    SUPABASE_ANON_KEY: str
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    SUPABASE_ISSUER: str | None = None
    SUPABASE_JWKS_URL: str | None = None
    SUPABASE_TIMEOUT_SECONDS: float = 10.0
    ENTITLEMENT_BACKEND: Literal["supabase", "memory"] = "supabase"
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TRIAL_DAYS: int = 0
    STRIPE_PORTAL_CONFIGURATION: str | None = None
    CHECKOUT_APP_TAG: str = "luna-astralis"
    SITE_URL: str = "http://localhost:3000"
    PLAN_CATALOG: dict[str, PlanCatalogEntry] = {}
    FREE_LIMIT: int = 15
    UPSELL_THRESHOLD: int = 2
    GUEST_COOKIE_NAME: str = "guest_id"
    GUEST_COOKIE_MAX_AGE_SECONDS: int = 365 * 24 * 60 * 60
    GUEST_COOKIE_SECURE: bool = True
    CHAT_RESPONDER_URL: str | None = None
    CHAT_RESPONDER_TIMEOUT_SECONDS: float = 30.0

    @model_validator(mode="after")
    def apply_supabase_defaults(self) -> "Settings":
        if not self.SUPABASE_URL.strip():
            raise ValueError("SUPABASE_URL must be configured")
        if not self.SUPABASE_ANON_KEY.strip():
            raise ValueError("SUPABASE_ANON_KEY must be configured")

        if not self.SUPABASE_ISSUER:
            self.SUPABASE_ISSUER = f"{self.SUPABASE_URL.rstrip('/')}/auth/v1"
        if not self.SUPABASE_JWKS_URL:
            self.SUPABASE_JWKS_URL = (
                f"{self.SUPABASE_ISSUER.rstrip('/')}/.well-known/jwks.json"
            )

        if self.FREE_LIMIT < 0:
            raise ValueError("FREE_LIMIT must be >= 0")
        if self.UPSELL_THRESHOLD < 0:
            raise ValueError("UPSELL_THRESHOLD must be >= 0")
        if self.STRIPE_TRIAL_DAYS < 0:
            raise ValueError("STRIPE_TRIAL_DAYS must be >= 0")

        if self.APP_ENV.strip().lower() == "production":
            if self.ENTITLEMENT_BACKEND == "memory":
                raise ValueError("ENTITLEMENT_BACKEND=memory is not allowed in production")
            if not (self.SUPABASE_SERVICE_ROLE_KEY or "").strip():
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY must be configured in production")
            if not (self.STRIPE_WEBHOOK_SECRET or "").strip():
                raise ValueError("STRIPE_WEBHOOK_SECRET must be configured in production")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.API_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
