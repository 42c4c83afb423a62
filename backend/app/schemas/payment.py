"""Pydantic v2 request/response schemas for payment and billing-key endpoints."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.payment import PaymentPurpose
from app.models.subscription import SubscriptionTier

# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PaymentCreateRequest(BaseModel):
    """Open a payment for a plan upgrade or a credit bundle."""

    purpose: PaymentPurpose
    amount: int = Field(..., gt=0)
    order_name: str = Field(..., min_length=1, max_length=255)
    pay_method: str | None = Field(None, max_length=32)
    target_tier: SubscriptionTier | None = None
    credit_amount: int | None = Field(None, gt=0)
    channel_key: str | None = None
    # Client-generated idempotency key; generated server-side when omitted
    payment_id: str | None = Field(None, min_length=8, max_length=128)


class PaymentVerifyRequest(BaseModel):
    """Ask the server to confirm a payment with the gateway."""

    payment_id: str = Field(..., min_length=1, max_length=128)
    gateway_transaction_id: str | None = Field(None, max_length=255)


class BillingKeySaveRequest(BaseModel):
    """Store a billing key the gateway just issued."""

    billing_key: str = Field(..., min_length=1, max_length=255)
    connect_to_subscription: bool = True


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PaymentResponse(BaseModel):
    """A payment as shown to its owner."""

    id: uuid.UUID
    payment_id: str
    amount: int
    currency: str
    status: str
    purpose: str
    method: str | None = None
    order_name: str
    target_tier: str | None = None
    credit_amount: int | None = None
    receipt_url: str | None = None
    fail_reason: str | None = None
    paid_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentCreateResponse(BaseModel):
    """The stored payment plus the request the client SDK submits to the gateway."""

    payment_id: str
    payment_request: dict[str, Any]


class PaymentVerifyResponse(BaseModel):
    """Outcome of a verify call. Repeating the call returns the same outcome."""

    payment: PaymentResponse
    status: str
    receipt_url: str | None = None
    subscription_tier: str | None = None
    subscription_status: str | None = None
    subscription_end_date: datetime | None = None
    credits_granted: int | None = None


class PaymentListResponse(BaseModel):
    """Paginated payment history."""

    items: list[PaymentResponse]
    total: int


class BillingKeyIssueResponse(BaseModel):
    """Reference and SDK request for issuing a billing key."""

    billing_key_ref: str
    billing_key_request: dict[str, Any]


class BillingKeyResponse(BaseModel):
    """A stored payment method, masked."""

    id: uuid.UUID
    card_issuer: str | None = None
    masked_number: str | None = None
    card_type: str | None = None
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BillingKeySaveResponse(BaseModel):
    billing_key: BillingKeyResponse
    auto_renewal: bool
    next_billing_date: datetime | None = None


class BillingKeyStatusResponse(BaseModel):
    """The active billing key, if any."""

    billing_key: BillingKeyResponse | None = None
    auto_renewal: bool
