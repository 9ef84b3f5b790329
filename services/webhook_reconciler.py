"""
Webhook Reconciler - applies verified Stripe events to local subscription
and order state
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crud.order import OrderRepository
from crud.subscription import SubscriptionRepository
from database_models import WebhookEvent
from models.subscription import SubscriptionStatus
from services.payment_service import subscription_period
from services.subscription_service import SubscriptionService
from utils.errors import ConflictError

logger = logging.getLogger(__name__)

# Stripe subscription.status -> local status; anything else becomes INACTIVE
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
}


class WebhookReconciler:
    """
    Maps gateway events onto SubscriptionService transitions.

    Events that reference no local record are logged and dropped. Each event
    id is recorded once processed, and a redelivered event is skipped.
    """

    def __init__(self, db: AsyncSession, subscription_service: Optional[SubscriptionService] = None):
        self.db = db
        self.subscription_service = subscription_service or SubscriptionService(db)
        self.subscriptions = SubscriptionRepository(db)
        self.orders = OrderRepository(db)
        self._handlers = {
            "customer.subscription.created": self._handle_subscription_created,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
            "payment_intent.succeeded": self._handle_payment_intent_succeeded,
        }

    async def process_event(self, event) -> bool:
        """
        Apply one verified event.

        Args:
            event: stripe.Event or an equivalent dict

        Returns:
            False when the event id was already processed, True otherwise
        """
        event_id = event.get("id")
        event_type = event.get("type")
        logger.info(f"Processing Stripe webhook: {event_type} ({event_id})")

        if event_id and await self._already_processed(event_id):
            logger.info(f"Skipping already processed webhook event {event_id}")
            return False

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event_type}")
        else:
            await handler(event["data"]["object"])

        if event_id:
            self.db.add(WebhookEvent(event_id=event_id, event_type=event_type or "unknown"))
            await self.db.flush()
        return True

    async def _already_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def _handle_subscription_created(self, obj: Dict[str, Any]) -> None:
        # The local record is written by the purchase request itself
        logger.info(f"Subscription created at gateway: {obj.get('id')} (user {_metadata(obj).get('userId')})")

    async def _handle_subscription_updated(self, obj: Dict[str, Any]) -> None:
        subscription = await self.subscriptions.get_by_external_id(obj.get("id"))
        if subscription is None:
            logger.warning(f"No local subscription for gateway subscription {obj.get('id')}; event dropped")
            return

        status = STRIPE_STATUS_MAP.get(obj.get("status"), SubscriptionStatus.INACTIVE)

        fields = {}
        period_start, period_end = subscription_period(obj)
        if period_start is not None:
            fields["current_period_start"] = period_start
        if period_end is not None:
            fields["current_period_end"] = period_end
        if obj.get("cancel_at_period_end") is not None:
            fields["cancel_at_period_end"] = bool(obj.get("cancel_at_period_end"))

        user_id = subscription.user_id
        try:
            await self.subscription_service.transition(subscription.id, status, **fields)
        except ConflictError as e:
            logger.warning(f"Gateway subscription {obj.get('id')} not applied for user {user_id}: {e.message}; event dropped")
            return
        logger.info(f"Subscription updated for user {subscription.user_id}: {obj.get('id')} - Status: {status.value}")

    async def _handle_subscription_deleted(self, obj: Dict[str, Any]) -> None:
        matches = await self.subscriptions.list_by_external_id(obj.get("id"))
        if not matches:
            logger.warning(f"No local subscription for deleted gateway subscription {obj.get('id')}; event dropped")
            return

        for subscription in matches:
            await self.subscription_service.transition(subscription.id, SubscriptionStatus.CANCELLED)
            logger.info(f"Subscription deleted for user {subscription.user_id}: {obj.get('id')}")

    async def _handle_payment_succeeded(self, obj: Dict[str, Any]) -> None:
        logger.info(f"Payment succeeded for invoice: {obj.get('id')}")

    async def _handle_payment_failed(self, obj: Dict[str, Any]) -> None:
        logger.error(f"Payment failed for invoice: {obj.get('id')}")

    async def _handle_payment_intent_succeeded(self, obj: Dict[str, Any]) -> None:
        metadata = _metadata(obj)
        order_id = metadata.get("orderId")

        if order_id:
            try:
                order = await self.orders.mark_confirmed(int(order_id), obj.get("id"))
            except (TypeError, ValueError):
                order = None
            if order is None:
                logger.warning(f"Payment intent {obj.get('id')} references unknown order {order_id}")
            else:
                logger.info(f"Order {order.order_number} confirmed by payment intent {obj.get('id')}")

        logger.info(f"Payment intent succeeded: {obj.get('id')} for user {metadata.get('userId')}")


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}
