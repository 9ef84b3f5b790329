"""
Access Policy Evaluator - maps a tier and the current subscription to the
capabilities a user has right now.
"""
from datetime import datetime
from typing import Optional

from models.subscription import AccessFeatures, AccessLevel, SubscriptionTier
from utils.shared_utils import utcnow

UNLIMITED_DOWNLOADS = -1
STANDARD_MAX_DOWNLOADS = 10


def is_period_over(subscription, now: Optional[datetime] = None) -> bool:
    return subscription.current_period_end < (now or utcnow())


def free_access() -> AccessLevel:
    return AccessLevel(
        tier=SubscriptionTier.FREE,
        has_active_subscription=False,
        can_access_premium_content=False,
        can_download_content=False,
        max_downloads=0,
        features=AccessFeatures(),
    )


def evaluate(tier, active_subscription, now: Optional[datetime] = None) -> AccessLevel:
    """
    Evaluate access for a tier backed by the user's current subscription.

    The result is FREE whenever there is no subscription or its period has
    ended, whatever tier is passed in. Callers re-run this on every check
    instead of trusting User.subscription_tier, which can lag behind expiry.
    """
    if active_subscription is None or is_period_over(active_subscription, now):
        return free_access()

    tier = SubscriptionTier(tier)

    if tier == SubscriptionTier.PREMIUM:
        return AccessLevel(
            tier=tier,
            has_active_subscription=True,
            can_access_premium_content=True,
            can_download_content=True,
            max_downloads=UNLIMITED_DOWNLOADS,
            features=AccessFeatures(
                unlimited_streaming=True,
                offline_downloads=True,
                premium_content=True,
                ad_free=True,
                high_quality_streaming=True,
            ),
        )

    if tier == SubscriptionTier.STANDARD:
        return AccessLevel(
            tier=tier,
            has_active_subscription=True,
            can_access_premium_content=False,
            can_download_content=True,
            max_downloads=STANDARD_MAX_DOWNLOADS,
            features=AccessFeatures(
                unlimited_streaming=True,
                offline_downloads=True,
                ad_free=True,
            ),
        )

    # A live subscription on the FREE tier grants nothing extra
    access = free_access()
    access.has_active_subscription = True
    return access
