from typing import Literal

from pydantic import BaseModel, Field

TierValue = Literal["guest", "free", "premium"]


class QuotaOut(BaseModel):
    mode: TierValue
    premium: bool
    remaining: int | None
    used: int | None
    free_limit: int
    upsell: bool


class ChatTurnIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(max_length=8000)


class ChatIn(BaseModel):
    message: str = Field(min_length=1, max_length=4000)
    history: list[ChatTurnIn] = Field(default_factory=list, max_length=40)
    guest_id: str | None = None


class ChatOut(BaseModel):
    reply: str
    mode: TierValue
    remaining: int | None
    free_limit: int
    upsell: bool
