from datetime import datetime
from typing import Literal

from pydantic import BaseModel


class SystemHealthOut(BaseModel):
    ok: bool
    version: str
    time_utc: datetime
    entitlement_backend: Literal["supabase", "memory"]
    supabase_ok: bool | None
    webhook_store_failures: int
    webhook_last_failure_at: datetime | None = None
