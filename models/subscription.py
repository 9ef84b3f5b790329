"""
Subscription domain types: enums shared by the ORM layer and API schemas.
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    PAST_DUE = "PAST_DUE"


class PaymentPlatform(str, Enum):
    STRIPE = "STRIPE"
    GOOGLE_PLAY = "GOOGLE_PLAY"
    APPLE_STORE = "APPLE_STORE"


# Statuses that count as the user's current subscription
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)

# Statuses that take paid access away from the owning user
ACCESS_REVOKING_STATUSES = (
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.INACTIVE,
)


class CamelModel(BaseModel):
    """Base schema serialized with camelCase keys on the wire"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Plan(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    price: float
    currency: str = "USD"
    interval: str = "month"
    tier: SubscriptionTier
    features: List[str] = Field(default_factory=list)
    stripe_price_id: Optional[str] = None


class AccessFeatures(CamelModel):
    unlimited_streaming: bool = False
    offline_downloads: bool = False
    premium_content: bool = False
    ad_free: bool = False
    high_quality_streaming: bool = False


class AccessLevel(CamelModel):
    tier: SubscriptionTier
    has_active_subscription: bool
    can_access_premium_content: bool
    can_download_content: bool
    max_downloads: int
    features: AccessFeatures


class ReceiptValidationResult(CamelModel):
    is_valid: bool
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    original_transaction_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    receipt_data: Optional[Any] = None
    error: Optional[str] = None


class SubscriptionOut(CamelModel):
    id: int
    user_id: int
    plan_id: str
    status: SubscriptionStatus
    tier: SubscriptionTier
    platform: PaymentPlatform
    external_subscription_id: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionDetails(SubscriptionOut):
    is_expired: bool
    days_until_expiry: int


# Request models
class CreateSubscriptionRequest(CamelModel):
    plan_id: str = Field(min_length=1)
    payment_method_id: Optional[str] = None


class ValidateReceiptRequest(CamelModel):
    receipt: str = Field(min_length=1)
    platform: PaymentPlatform


class SetTierRequest(CamelModel):
    tier: SubscriptionTier
