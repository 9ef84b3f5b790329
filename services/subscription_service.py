"""
Subscription Service - subscription state store and lifecycle operations

Owns every status change of a Subscription together with the owning user's
denormalized tier, so the two are always written in the same session.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from database_models import AnalyticsEvent, Subscription
from models.subscription import (
    ACCESS_REVOKING_STATUSES,
    CURRENT_STATUSES,
    AccessLevel,
    PaymentPlatform,
    ReceiptValidationResult,
    SubscriptionStatus,
    SubscriptionTier,
)
from services import access_policy
from services.payment_service import PaymentService, client_secret, subscription_period
from services.plan_catalog import get_plan, tier_for_product
from utils.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from utils.shared_utils import utcnow

logger = logging.getLogger(__name__)

# Period assumed when the gateway response carries no period bounds
DEFAULT_PERIOD = timedelta(days=30)


class SubscriptionService:
    """
    Service class for subscription lifecycle business logic.
    """

    def __init__(self, db: AsyncSession, payment_service: Optional[PaymentService] = None):
        """
        Initialize the subscription service.

        Args:
            db: AsyncSession instance for database operations
            payment_service: gateway client, required only for purchase and cancel
        """
        self.db = db
        self.payment_service = payment_service
        self.subscriptions = SubscriptionRepository(db)
        self.users = UserRepository(db)

    # ------------------------------------------------------------------
    # State store
    # ------------------------------------------------------------------

    async def get_current_subscription(self, user_id: int) -> Optional[Subscription]:
        """Most recent ACTIVE or PAST_DUE subscription, without expiry correction."""
        return await self.subscriptions.get_current_for_user(user_id)

    async def create_subscription(
        self,
        user_id: int,
        plan_id: str,
        tier: SubscriptionTier,
        platform: PaymentPlatform,
        external_subscription_id: Optional[str],
        period_start: datetime,
        period_end: datetime,
        receipt=None,
    ) -> Subscription:
        """
        Create an ACTIVE subscription and give the user its tier.

        Raises:
            ConflictError: the user already holds an ACTIVE or PAST_DUE
                subscription; nothing is written in that case
        """
        existing = await self.subscriptions.get_current_for_user(user_id)
        if existing is not None:
            raise ConflictError("User already has an active subscription")

        try:
            subscription = await self.subscriptions.create({
                "user_id": user_id,
                "plan_id": plan_id,
                "status": SubscriptionStatus.ACTIVE,
                "tier": tier,
                "platform": platform,
                "external_subscription_id": external_subscription_id,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "receipt": receipt,
            })
        except IntegrityError:
            # The partial unique index caught a concurrent purchase
            await self.db.rollback()
            raise ConflictError("User already has an active subscription")

        await self.users.set_subscription_tier(user_id, tier)
        logger.info(f"Subscription created for user {user_id}: {subscription.id} ({platform.value}, {tier.value})")
        return subscription

    async def transition(self, subscription_id: int, new_status: SubscriptionStatus, **fields) -> Subscription:
        """
        Move a subscription to new_status, applying any extra column updates
        (period bounds, cancel_at_period_end, receipt...).

        ACTIVE hands the subscription's tier to the user. CANCELLED, EXPIRED
        and INACTIVE drop the user to FREE unless another subscription of
        theirs is still current. PAST_DUE leaves the tier untouched.
        Re-applying the same transition is a no-op beyond a redundant write.

        Raises:
            NotFoundError: no subscription with that id
            ConflictError: moving into ACTIVE or PAST_DUE while another
                subscription of the user is current; nothing is written
        """
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")

        if new_status in CURRENT_STATUSES:
            current = await self.subscriptions.get_current_for_user(subscription.user_id)
            if current is not None and current.id != subscription.id:
                raise ConflictError("User already has an active subscription")

        previous = subscription.status
        updates = dict(fields)
        updates["status"] = new_status
        try:
            subscription = await self.subscriptions.update(subscription, updates)
        except IntegrityError:
            # A concurrent request made another subscription current first
            await self.db.rollback()
            raise ConflictError("User already has an active subscription")

        if new_status == SubscriptionStatus.ACTIVE:
            await self.users.set_subscription_tier(subscription.user_id, subscription.tier)
        elif new_status in ACCESS_REVOKING_STATUSES:
            current = await self.subscriptions.get_current_for_user(subscription.user_id)
            tier = current.tier if current is not None else SubscriptionTier.FREE
            await self.users.set_subscription_tier(subscription.user_id, tier)

        if previous != new_status:
            logger.info(f"Subscription {subscription.id} for user {subscription.user_id}: {previous.value} -> {new_status.value}")
        return subscription

    async def expire_due_subscriptions(self, now: Optional[datetime] = None) -> int:
        """
        Mark every ACTIVE/PAST_DUE subscription whose period has ended as EXPIRED.

        Returns:
            Number of subscriptions expired
        """
        now = now or utcnow()
        due = await self.subscriptions.list_past_period_end(now)
        for subscription in due:
            await self.transition(subscription.id, SubscriptionStatus.EXPIRED)

        if due:
            logger.info(f"Expired {len(due)} subscription(s) past their period end")
        return len(due)

    async def read_current_subscription(
        self, user_id: int, now: Optional[datetime] = None
    ) -> Tuple[Optional[Subscription], bool]:
        """
        Current subscription plus whether its period is over.

        An ACTIVE subscription found past its period end is marked EXPIRED
        (and the user dropped to FREE) before it is returned.
        """
        now = now or utcnow()
        subscription = await self.subscriptions.get_current_for_user(user_id)
        if subscription is None:
            return None, False

        is_expired = access_policy.is_period_over(subscription, now)
        if is_expired and subscription.status == SubscriptionStatus.ACTIVE:
            subscription = await self.transition(subscription.id, SubscriptionStatus.EXPIRED)
        return subscription, is_expired

    async def check_access(self, user_id: int, now: Optional[datetime] = None) -> AccessLevel:
        """
        Evaluate the user's access from their subscription record, correcting
        stale expiry on the way.
        """
        now = now or utcnow()
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")

        subscription, is_expired = await self.read_current_subscription(user_id, now)
        if subscription is None or is_expired:
            return access_policy.free_access()
        return access_policy.evaluate(subscription.tier, subscription, now)

    # ------------------------------------------------------------------
    # Purchase flows
    # ------------------------------------------------------------------

    async def purchase_subscription(
        self, user, plan_id: str, payment_method_id: Optional[str] = None
    ) -> Tuple[Subscription, Optional[str]]:
        """
        Buy a catalog plan through the payment gateway.

        Args:
            user: User row of the buyer
            plan_id: catalog plan id
            payment_method_id: optional default payment method for the gateway

        Returns:
            (local subscription, gateway client secret or None)

        Raises:
            ValidationError: unknown plan
            ConflictError: user already subscribed
            UpstreamError: gateway not configured or the gateway call failed
        """
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationError("Invalid plan", data={"planId": plan_id})

        if await self.subscriptions.get_current_for_user(user.id) is not None:
            raise ConflictError("User already has an active subscription")

        if self.payment_service is None or not plan.stripe_price_id:
            logger.error(f"Plan {plan.id} has no Stripe price configured")
            raise UpstreamError("Plan is not available for purchase")

        gateway_subscription = await self.payment_service.create_subscription(
            user_id=user.id,
            email=user.email,
            name=user.name,
            price_id=plan.stripe_price_id,
            payment_method_id=payment_method_id,
        )

        period_start, period_end = subscription_period(gateway_subscription)
        period_start = period_start or utcnow()
        period_end = period_end or period_start + DEFAULT_PERIOD

        subscription = await self.create_subscription(
            user_id=user.id,
            plan_id=plan.id,
            tier=plan.tier,
            platform=PaymentPlatform.STRIPE,
            external_subscription_id=gateway_subscription["id"],
            period_start=period_start,
            period_end=period_end,
        )
        self._track("subscription_created", user.id, {
            "subscriptionId": subscription.id,
            "planId": plan.id,
            "tier": plan.tier.value,
            "platform": PaymentPlatform.STRIPE.value,
        })
        return subscription, client_secret(gateway_subscription)

    async def cancel_subscription(self, user_id: int) -> Subscription:
        """
        Cancel the user's ACTIVE subscription at the end of its period.
        Access is kept until then; the gateway's later webhook finishes the job.
        """
        subscription = await self.subscriptions.get_active_for_user(user_id)
        if subscription is None:
            raise NotFoundError("No active subscription found")

        if subscription.platform == PaymentPlatform.STRIPE and subscription.external_subscription_id:
            if self.payment_service is None:
                raise UpstreamError("Payment provider is not configured")
            await self.payment_service.cancel_subscription(subscription.external_subscription_id)

        subscription = await self.subscriptions.update(subscription, {
            "cancel_at_period_end": True,
            "canceled_at": utcnow(),
        })
        self._track("subscription_cancelled", user_id, {
            "subscriptionId": subscription.id,
            "tier": subscription.tier.value,
            "platform": subscription.platform.value,
        })
        logger.info(f"Subscription cancelled for user {user_id}: {subscription.id}")
        return subscription

    async def apply_receipt(
        self, user_id: int, platform: PaymentPlatform, result: ReceiptValidationResult
    ) -> Subscription:
        """
        Create or refresh a subscription from a validated store receipt.

        Receipts are matched on the store's original transaction id when it
        has one, so renewals update the same row.
        """
        if not result.is_valid:
            raise ValidationError("Invalid receipt", data={"error": result.error})

        external_id = (
            result.original_transaction_id
            or result.transaction_id
            or f"{platform.value}_{user_id}_{int(time.time() * 1000)}"
        )
        now = utcnow()
        period_start = result.purchase_date or now
        period_end = result.expires_at or now + DEFAULT_PERIOD
        receipt = result.receipt_data

        existing = await self.subscriptions.get_by_external_id(external_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise ConflictError("Receipt is already linked to another account")
            subscription = await self.transition(
                existing.id,
                SubscriptionStatus.ACTIVE,
                current_period_end=period_end,
                receipt=receipt,
            )
        else:
            subscription = await self.create_subscription(
                user_id=user_id,
                plan_id=result.product_id or "mobile_subscription",
                tier=tier_for_product(result.product_id),
                platform=platform,
                external_subscription_id=external_id,
                period_start=period_start,
                period_end=period_end,
                receipt=receipt,
            )

        self._track("mobile_subscription_validated", user_id, {
            "subscriptionId": subscription.id,
            "platform": platform.value,
            "productId": result.product_id,
            "tier": subscription.tier.value,
        })
        logger.info(f"Mobile subscription validated for user {user_id}: {subscription.id}")
        return subscription

    def _track(self, event: str, user_id: Optional[int], data: dict) -> None:
        # Written with the request's unit of work; never flushed on its own
        self.db.add(AnalyticsEvent(event=event, user_id=user_id, data=data))
