"""Pydantic v2 request/response schemas for credit endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CreditConsumeRequest(BaseModel):
    """Spend credits on a generation job."""

    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=255)


class ExpiringCredits(BaseModel):
    source_type: str
    amount: int
    expires_at: datetime


class CreditBalanceResponse(BaseModel):
    """Live balance, per-source split and credits expiring within a week."""

    balance: int
    by_source: dict[str, int]
    expiring_soon: list[ExpiringCredits]


class CreditTransactionResponse(BaseModel):
    id: uuid.UUID
    amount: int
    source_type: str
    description: str
    expires_at: datetime | None = None
    grant_id: uuid.UUID | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CreditTransactionListResponse(BaseModel):
    items: list[CreditTransactionResponse]
    total: int


class CreditUsage(BaseModel):
    """How much of a consumption came from one grant."""

    grant_id: uuid.UUID
    source_type: str
    amount: int
    expires_at: datetime | None = None


class CreditConsumeResponse(BaseModel):
    consumed: int
    remaining: int
    breakdown: list[CreditUsage]
