"""Payment API routes: request, verify, history and billing keys."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.billing.exceptions import NotFoundError
from app.models.user import User
from app.schemas.payment import (
    BillingKeyIssueResponse,
    BillingKeyResponse,
    BillingKeySaveRequest,
    BillingKeySaveResponse,
    BillingKeyStatusResponse,
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
)
from app.services import payment_methods, payment_service, payment_store, subscription_lifecycle

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post("/request", response_model=PaymentCreateResponse)
async def create_payment_request(
    body: PaymentCreateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PaymentCreateResponse:
    """Record a pending payment and return the gateway request for the client SDK."""
    result = await payment_service.create_payment_request(
        db,
        current_user,
        purpose=body.purpose,
        amount=body.amount,
        order_name=body.order_name,
        pay_method=body.pay_method,
        target_tier=body.target_tier,
        credit_amount=body.credit_amount,
        payment_id=body.payment_id,
        channel_key=body.channel_key,
    )
    return PaymentCreateResponse(
        payment_id=result.payment.payment_id,
        payment_request=result.intent,
    )


@router.post("/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    body: PaymentVerifyRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PaymentVerifyResponse:
    """Confirm a payment with the gateway. Safe to call repeatedly."""
    result = await payment_service.verify_payment(
        db, current_user, body.payment_id, body.gateway_transaction_id
    )
    payment = result.payment
    subscription = result.subscription
    if subscription is None and payment.subscription_id is not None:
        subscription = await subscription_lifecycle.get_subscription(db, payment.user_id)
    return PaymentVerifyResponse(
        payment=PaymentResponse.model_validate(payment),
        status=payment.status,
        receipt_url=payment.receipt_url,
        subscription_tier=subscription.tier if subscription else None,
        subscription_status=subscription.status if subscription else None,
        subscription_end_date=subscription.end_date if subscription else None,
        credits_granted=result.credit_transaction.amount if result.credit_transaction else None,
    )


@router.get("/history", response_model=PaymentListResponse)
async def payment_history(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PaymentListResponse:
    """The user's payments, newest first."""
    items, total = await payment_store.list_for_user(db, current_user.id, limit=limit, offset=skip)
    return PaymentListResponse(
        items=[PaymentResponse.model_validate(p) for p in items],
        total=total,
    )


@router.post("/billing-key/issue", response_model=BillingKeyIssueResponse)
async def issue_billing_key(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BillingKeyIssueResponse:
    """Prepare the SDK request that issues a new billing key."""
    ref, request = await payment_methods.issue_request(db, current_user)
    return BillingKeyIssueResponse(billing_key_ref=ref, billing_key_request=request)


@router.post("/billing-key", response_model=BillingKeySaveResponse)
async def save_billing_key(
    body: BillingKeySaveRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BillingKeySaveResponse:
    """Verify and store an issued billing key, enabling auto-renewal."""
    saved = await payment_methods.save(
        db, current_user.id, body.billing_key, body.connect_to_subscription
    )
    return BillingKeySaveResponse(
        billing_key=BillingKeyResponse.model_validate(saved.payment_method),
        auto_renewal=saved.subscription.auto_renewal if saved.subscription else False,
        next_billing_date=saved.subscription.next_billing_date if saved.subscription else None,
    )


@router.get("/billing-key", response_model=BillingKeyStatusResponse)
async def get_billing_key(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BillingKeyStatusResponse:
    """The user's active billing key, if any."""
    payment_method = await payment_methods.get_active(db, current_user.id)
    subscription = await subscription_lifecycle.get_subscription(db, current_user.id)
    return BillingKeyStatusResponse(
        billing_key=BillingKeyResponse.model_validate(payment_method) if payment_method else None,
        auto_renewal=bool(subscription and subscription.auto_renewal),
    )


@router.delete("/billing-key", response_model=BillingKeyStatusResponse)
async def delete_billing_key(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> BillingKeyStatusResponse:
    """Remove the active billing key and turn off auto-renewal."""
    await payment_methods.remove(db, current_user.id)
    return BillingKeyStatusResponse(billing_key=None, auto_renewal=False)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PaymentResponse:
    """A single payment owned by the user."""
    payment = await payment_store.get_or_none(db, payment_id)
    if payment is None or payment.user_id != current_user.id:
        raise NotFoundError("Payment not found.")
    return PaymentResponse.model_validate(payment)
