"""Subscription API routes: current plan and cancellation."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.api.v1.billing import plan_response
from app.billing.plans import get_plan
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import SubscriptionResponse
from app.services import subscription_lifecycle

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


def subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        tier=subscription.tier,
        effective_tier=subscription.effective_tier.value,
        status=subscription.status,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        next_billing_date=subscription.next_billing_date,
        auto_renewal=subscription.auto_renewal,
        has_billing_key=subscription.billing_key_id is not None,
        failed_payment_count=subscription.failed_payment_count,
        last_payment_attempt=subscription.last_payment_attempt,
        plan=plan_response(get_plan(subscription.tier)),
    )


@router.get("/current", response_model=SubscriptionResponse)
async def get_current_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Get the user's subscription, creating a free one on first access."""
    subscription = await subscription_lifecycle.get_or_create_subscription(db, current_user.id)
    return subscription_response(subscription)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Stop renewal. Benefits last until the current period ends."""
    subscription = await subscription_lifecycle.cancel(db, current_user.id)
    return subscription_response(subscription)
