"""Plan definitions: pricing tiers, monthly credit allotments, credit bundles."""

from dataclasses import dataclass

from app.models.subscription import SubscriptionTier

# 100 KRW buys 10 credits
WON_PER_CREDIT = 10


@dataclass(frozen=True)
class PlanLimits:
    """Benefits and price of a subscription tier."""

    tier: SubscriptionTier
    display_name: str
    price_monthly: int  # KRW, 0 for free tier
    monthly_credits: int
    max_slides: int
    has_watermark: bool
    ad_free: bool


@dataclass(frozen=True)
class CreditBundle:
    """A purchasable pack of permanent credits."""

    id: str
    name: str
    credits: int
    price: int  # KRW
    badge: str | None = None


PLANS: dict[SubscriptionTier, PlanLimits] = {
    SubscriptionTier.FREE: PlanLimits(
        tier=SubscriptionTier.FREE,
        display_name="Free",
        price_monthly=0,
        monthly_credits=0,
        max_slides=10,
        has_watermark=True,
        ad_free=False,
    ),
    SubscriptionTier.PRO: PlanLimits(
        tier=SubscriptionTier.PRO,
        display_name="Pro",
        price_monthly=7900,
        monthly_credits=300,
        max_slides=20,
        has_watermark=False,
        ad_free=True,
    ),
    SubscriptionTier.PREMIUM: PlanLimits(
        tier=SubscriptionTier.PREMIUM,
        display_name="Premium",
        price_monthly=9900,
        monthly_credits=1000,
        max_slides=50,
        has_watermark=False,
        ad_free=True,
    ),
}

CREDIT_BUNDLES: dict[str, CreditBundle] = {
    bundle.id: bundle
    for bundle in (
        CreditBundle(id="credits_100", name="100 credits", credits=100, price=1000),
        CreditBundle(id="credits_300", name="300 credits", credits=300, price=3000),
        CreditBundle(id="credits_500", name="500 credits", credits=500, price=5000, badge="Best value"),
        CreditBundle(id="credits_1000", name="1000 credits", credits=1000, price=10000),
    )
}

PAID_TIERS: frozenset[SubscriptionTier] = frozenset({SubscriptionTier.PRO, SubscriptionTier.PREMIUM})


def get_plan(tier: str) -> PlanLimits:
    """Get plan limits by tier name. Defaults to free if unknown."""
    try:
        return PLANS[SubscriptionTier(tier)]
    except ValueError:
        return PLANS[SubscriptionTier.FREE]


def get_bundle_for_credits(credits: int) -> CreditBundle | None:
    """Reverse lookup: credit amount -> bundle. Returns None if not sold."""
    for bundle in CREDIT_BUNDLES.values():
        if bundle.credits == credits:
            return bundle
    return None
