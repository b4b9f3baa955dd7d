from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import SubscriptionPlanType


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_id: str
    group_id: str
    provider: str
    provider_subscription_id: str
    cached_status: str
    current_period_end: datetime
    cancel_at_period_end: bool
    plan_type: SubscriptionPlanType | None = None


class AccessRead(BaseModel):
    group_id: str
    has_access: bool
    subscription: SubscriptionRead | None = None


class SweepRequest(BaseModel):
    group_id: str | None = Field(default=None, max_length=128)


class SweepResult(BaseModel):
    run_at: datetime
    checked: int
    expired: int
