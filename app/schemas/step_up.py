from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class StepUpIssueResponse(BaseModel):
    message: str = "If the account can receive codes, a code has been sent."


class StepUpVerifyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)


class StepUpVerifyResponse(BaseModel):
    verified: bool
    expires_at: datetime | None = None


class WalletRead(BaseModel):
    owner_id: str
    orders_paid: int
    total_paid: str
    currency: str
