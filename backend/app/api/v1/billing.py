"""Billing catalogue endpoint: plans and credit bundles."""

from fastapi import APIRouter

from app.billing.plans import CREDIT_BUNDLES, PLANS, PlanLimits
from app.config import settings
from app.schemas.billing import CreditBundleResponse, PlanResponse, PlansListResponse

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


def plan_response(plan: PlanLimits) -> PlanResponse:
    return PlanResponse(
        tier=plan.tier.value,
        display_name=plan.display_name,
        price_monthly=plan.price_monthly,
        monthly_credits=plan.monthly_credits,
        max_slides=plan.max_slides,
        has_watermark=plan.has_watermark,
        ad_free=plan.ad_free,
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans and credit bundles (public, no auth required)."""
    return PlansListResponse(
        plans=[plan_response(p) for p in PLANS.values()],
        credit_bundles=[
            CreditBundleResponse(
                id=b.id, name=b.name, credits=b.credits, price=b.price, badge=b.badge
            )
            for b in CREDIT_BUNDLES.values()
        ],
        currency=settings.currency,
    )
