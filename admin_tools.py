"""
Admin Tools - internal endpoints for subscription maintenance
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_admin
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from database import get_db
from database_models import User
from models.subscription import SetTierRequest
from services.subscription_service import SubscriptionService
from utils.errors import NotFoundError
from utils.responses import success_response

logger = logging.getLogger(__name__)

# Create router with /internal prefix
admin_router = APIRouter(prefix="/internal", tags=["admin"])


@admin_router.post("/subscriptions/expire")
async def expire_subscriptions(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Run the expiry sweep now, as the scheduled job does"""
    expired = await SubscriptionService(db).expire_due_subscriptions()
    logger.info(f"Admin {admin.id} ran expiry sweep: {expired} expired")
    return success_response(data={"expired": expired}, message="Expiry sweep completed")


@admin_router.post("/users/{user_id}/tier")
async def set_user_tier(
    user_id: int,
    request: SetTierRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Override a user's stored tier. Access checks still follow the user's
    subscription record, so this only changes what the account displays.
    """
    user = await UserRepository(db).set_subscription_tier(user_id, request.tier)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    logger.info(f"Admin {admin.id} set tier of user {user_id} to {request.tier.value}")
    return success_response(
        data={"userId": user.id, "subscriptionTier": user.subscription_tier.value},
        message="Subscription tier updated",
    )


@admin_router.get("/stats/subscriptions")
async def subscription_stats(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Users per stored tier and subscriptions per status"""
    return success_response(data={
        "subscriptionTiers": await UserRepository(db).count_by_tier(),
        "subscriptionStatuses": await SubscriptionRepository(db).count_by_status(),
    })
