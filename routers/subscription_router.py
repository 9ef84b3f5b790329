"""
Subscription Router - plans, purchase, cancellation, mobile receipts and
access checks
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from database import get_db
from database_models import User
from models.subscription import (
    CreateSubscriptionRequest,
    SubscriptionDetails,
    SubscriptionOut,
    ValidateReceiptRequest,
)
from services.payment_service import PaymentService, get_payment_service
from services.plan_catalog import list_plans
from services.receipt_validator import ReceiptValidator, get_receipt_validator
from services.subscription_service import SubscriptionService
from utils.errors import NotFoundError
from utils.responses import error_response, success_response
from utils.shared_utils import days_until, log_endpoint_event, utcnow

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _serialize(subscription) -> dict:
    return SubscriptionOut.model_validate(subscription).model_dump(mode="json", by_alias=True)


@subscription_router.get("/plans")
async def get_plans():
    """Get available subscription plans"""
    plans = [plan.model_dump(mode="json", by_alias=True) for plan in list_plans()]
    return success_response(
        data={"plans": plans},
        message="Subscription plans retrieved successfully",
    )


@subscription_router.get("")
async def get_current_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get the current user's subscription with expiry details.
    A subscription found past its period end is marked EXPIRED here.
    """
    now = utcnow()
    subscription, is_expired = await SubscriptionService(db).read_current_subscription(current_user.id, now)
    if subscription is None:
        raise NotFoundError("No active subscription found")

    details = SubscriptionDetails.model_validate({
        **SubscriptionOut.model_validate(subscription).model_dump(),
        "is_expired": is_expired,
        "days_until_expiry": days_until(subscription.current_period_end, now),
    })
    return success_response(
        data={"subscription": details.model_dump(mode="json", by_alias=True)},
        message="Subscription retrieved successfully",
    )


@subscription_router.post("/create")
async def create_subscription(
    request: CreateSubscriptionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Create a new paid subscription through the payment gateway"""
    service = SubscriptionService(db, payment_service)
    subscription, secret = await service.purchase_subscription(
        current_user, request.plan_id, request.payment_method_id
    )

    log_endpoint_event("/subscriptions/create", current_user.id, "success", {"planId": request.plan_id})
    return success_response(
        data={"subscription": _serialize(subscription), "clientSecret": secret},
        message="Subscription created successfully",
        status=201,
    )


@subscription_router.post("/cancel")
async def cancel_subscription(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Cancel the current subscription at the end of its billing period"""
    subscription = await SubscriptionService(db, payment_service).cancel_subscription(current_user.id)

    log_endpoint_event("/subscriptions/cancel", current_user.id, "success", {"subscriptionId": subscription.id})
    return success_response(
        data={"subscription": _serialize(subscription)},
        message=(
            "Subscription cancelled successfully. You will retain access "
            "until the end of your current billing period."
        ),
    )


@subscription_router.post("/validate-receipt")
async def validate_receipt(
    request: ValidateReceiptRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    validator: ReceiptValidator = Depends(get_receipt_validator),
):
    """Validate a mobile store receipt and record the subscription it proves"""
    result = await validator.validate(request.platform, request.receipt)
    if not result.is_valid:
        log_endpoint_event("/subscriptions/validate-receipt", current_user.id, "invalid", {"error": result.error})
        return error_response(
            "invalid_receipt",
            status=400,
            message="Invalid receipt",
            data={"error": result.error},
        )

    subscription = await SubscriptionService(db).apply_receipt(current_user.id, request.platform, result)

    log_endpoint_event("/subscriptions/validate-receipt", current_user.id, "success", {
        "platform": request.platform.value,
        "productId": result.product_id,
    })
    return success_response(
        data={
            "subscription": _serialize(subscription),
            "validationResult": {
                "productId": result.product_id,
                "purchaseDate": result.purchase_date,
                "expiresAt": result.expires_at,
            },
        },
        message="Receipt validated successfully",
    )


@subscription_router.get("/check-access")
async def check_access(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Check the current user's access level, derived from their subscription record"""
    access = await SubscriptionService(db).check_access(current_user.id)
    return success_response(
        data={"access": access.model_dump(mode="json", by_alias=True)},
        message="Access level retrieved successfully",
    )
