"""
Payment Service - Stripe gateway calls used by the subscription flow
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

import stripe

from config.settings import settings
from utils.errors import UpstreamError
from utils.shared_utils import from_timestamp

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Thin wrapper around the Stripe SDK.

    Holds its own API key and webhook secret and passes the key on every call
    instead of setting the module-wide stripe.api_key.
    """

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Args:
            api_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: signing secret for webhook events (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def _require_api_key(self) -> str:
        if not self.api_key:
            logger.error("STRIPE_SECRET_KEY is not set. Stripe functionality is unavailable.")
            raise UpstreamError("Payment provider is not configured")
        return self.api_key

    async def get_or_create_customer(self, email: str, name: Optional[str] = None, user_id=None):
        """
        Find the Stripe customer for an email, creating one when none exists.

        Args:
            email: customer email
            name: display name stored on a newly created customer
            user_id: local user id recorded in customer metadata

        Returns:
            stripe.Customer
        """
        api_key = self._require_api_key()
        try:
            customers = stripe.Customer.list(email=email, limit=1, api_key=api_key)
            if customers.data:
                return customers.data[0]
            return stripe.Customer.create(
                email=email,
                name=name or "",
                metadata={"userId": str(user_id)} if user_id is not None else {},
                api_key=api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Error creating/getting Stripe customer: {e}", exc_info=True)
            raise UpstreamError("Failed to create customer")

    async def create_subscription(
        self,
        user_id,
        email: str,
        price_id: str,
        name: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ):
        """
        Create a Stripe subscription for a user.

        The local user id is stored in subscription metadata so webhook events
        can be traced back to the account.

        Returns:
            stripe.Subscription with latest_invoice.payment_intent expanded
        """
        api_key = self._require_api_key()
        customer = await self.get_or_create_customer(email, name, user_id)

        params = {
            "customer": customer.id,
            "items": [{"price": price_id}],
            "expand": ["latest_invoice.payment_intent"],
            "metadata": {"userId": str(user_id)},
        }
        if payment_method_id:
            params["default_payment_method"] = payment_method_id

        try:
            return stripe.Subscription.create(api_key=api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe subscription: {e}", exc_info=True)
            raise UpstreamError("Failed to create subscription with payment provider")

    async def cancel_subscription(self, external_subscription_id: str):
        """Ask Stripe to cancel the subscription at the end of the current period."""
        api_key = self._require_api_key()
        try:
            return stripe.Subscription.modify(
                external_subscription_id,
                cancel_at_period_end=True,
                api_key=api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel Stripe subscription {external_subscription_id}: {e}", exc_info=True)
            raise UpstreamError("Failed to cancel subscription with payment provider")

    def construct_event(self, payload: bytes, signature: str):
        """
        Verify a webhook signature and parse the event.

        Raises:
            ValueError: secret not configured or payload is not valid JSON
            stripe.SignatureVerificationError: signature does not match
        """
        if not self.webhook_secret:
            raise ValueError("Webhook secret not configured")
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def subscription_period(subscription) -> Tuple[Optional[datetime], Optional[datetime]]:
    """
    Current period bounds of a Stripe subscription.

    Newer API versions report the period on the subscription items rather than
    on the subscription itself, so both places are checked.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start", start)
            end = items[0].get("current_period_end", end)
    return from_timestamp(start), from_timestamp(end)


def client_secret(subscription) -> Optional[str]:
    """Client secret of the first invoice's payment intent, if Stripe returned one."""
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return None
    payment_intent = invoice.get("payment_intent")
    if not isinstance(payment_intent, dict):
        return None
    return payment_intent.get("client_secret")


def get_payment_service() -> PaymentService:
    """FastAPI dependency returning a gateway client built from settings."""
    return PaymentService()
