"""
Plan Catalog - the fixed list of purchasable subscription plans
"""
from typing import List, Optional

from config.settings import settings
from models.subscription import Plan, SubscriptionTier


def list_plans() -> List[Plan]:
    """
    Return the purchasable plans in display order.

    Stripe price ids come from configuration and are None when unset; such a
    plan is listed but cannot be bought through the gateway.
    """
    return [
        Plan(
            id="standard_monthly",
            name="Standard Monthly",
            description="Access to all content with basic features",
            price=9.99,
            currency="USD",
            interval="month",
            tier=SubscriptionTier.STANDARD,
            features=[
                "Unlimited streaming",
                "Offline downloads (up to 10)",
                "Ad-free experience",
                "HD quality streaming",
            ],
            stripe_price_id=settings.stripe_standard_price_id,
        ),
        Plan(
            id="premium_monthly",
            name="Premium Monthly",
            description="All features with premium content access",
            price=19.99,
            currency="USD",
            interval="month",
            tier=SubscriptionTier.PREMIUM,
            features=[
                "Everything in Standard",
                "Unlimited downloads",
                "Premium exclusive content",
                "4K Ultra HD streaming",
                "Early access to new content",
                "Priority customer support",
            ],
            stripe_price_id=settings.stripe_premium_price_id,
        ),
    ]


def get_plan(plan_id: str) -> Optional[Plan]:
    for plan in list_plans():
        if plan.id == plan_id:
            return plan
    return None


def tier_for_product(product_id: Optional[str]) -> SubscriptionTier:
    """
    Map a store product id to a tier. Store product ids are expected to match
    catalog plan ids; unknown products get STANDARD.
    """
    plan = get_plan(product_id) if product_id else None
    return plan.tier if plan else SubscriptionTier.STANDARD
