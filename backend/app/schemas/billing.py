"""Pydantic v2 request/response schemas for plan and subscription endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict

# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    tier: str
    display_name: str
    price_monthly: int  # KRW
    monthly_credits: int
    max_slides: int
    has_watermark: bool
    ad_free: bool


class CreditBundleResponse(BaseModel):
    """A purchasable credit bundle."""

    id: str
    name: str
    credits: int
    price: int  # KRW
    badge: str | None = None


class PlansListResponse(BaseModel):
    """All available plans and credit bundles."""

    plans: list[PlanResponse]
    credit_bundles: list[CreditBundleResponse]
    currency: str


class SubscriptionResponse(BaseModel):
    """The authenticated user's subscription."""

    id: uuid.UUID
    tier: str
    effective_tier: str
    status: str
    start_date: datetime | None = None
    end_date: datetime | None = None
    next_billing_date: datetime | None = None
    auto_renewal: bool
    has_billing_key: bool
    failed_payment_count: int
    last_payment_attempt: datetime | None = None
    plan: PlanResponse

    model_config = ConfigDict(from_attributes=True)
