"""
SubscriptionRepository for database operations on Subscription model
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Subscription
from models.subscription import CURRENT_STATUSES, SubscriptionStatus


class SubscriptionRepository:
    """
    Repository class for Subscription rows. Plain reads and writes only;
    status rules live in SubscriptionService.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, subscription_id: int) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_current_for_user(self, user_id: int) -> Optional[Subscription]:
        """
        Most recent ACTIVE or PAST_DUE subscription of a user.

        Args:
            user_id: owning user's ID

        Returns:
            Subscription if the user has a current one, None otherwise
        """
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_active_for_user(self, user_id: int) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return result.scalar_one_or_none()

    async def list_by_external_id(self, external_subscription_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.external_subscription_id == external_subscription_id
            )
        )
        return list(result.scalars().all())

    async def list_past_period_end(self, now: datetime) -> List[Subscription]:
        """ACTIVE/PAST_DUE subscriptions whose current period ended before now."""
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status.in_(CURRENT_STATUSES),
                Subscription.current_period_end < now,
            )
        )
        return list(result.scalars().all())

    async def create(self, subscription_data: dict) -> Subscription:
        subscription = Subscription(**subscription_data)
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def update(self, subscription: Subscription, updates: dict) -> Subscription:
        for key, value in updates.items():
            if hasattr(subscription, key):
                setattr(subscription, key, value)

        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        )
        return {SubscriptionStatus(status).value: count for status, count in result.all()}
