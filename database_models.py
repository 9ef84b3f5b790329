from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    text,
)
from sqlalchemy.orm import relationship

from database import Base
from models.subscription import PaymentPlatform, SubscriptionStatus, SubscriptionTier
from models.order import OrderStatus
from models.user import UserRole
from utils.shared_utils import utcnow


class User(Base):
    """
    Platform account. subscription_tier is a denormalized copy of the tier of
    the user's current subscription; access checks never trust it on its own.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    name = Column(String, nullable=True)
    role = Column(Enum(UserRole, native_enum=False, length=16), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    subscription_tier = Column(
        Enum(SubscriptionTier, native_enum=False, length=16),
        default=SubscriptionTier.FREE,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)

    subscriptions = relationship("Subscription", back_populates="user")


class Subscription(Base):
    """
    One purchase of a plan on one platform. Terminal records (CANCELLED,
    EXPIRED) are kept and superseded by newer rows, never deleted.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        # At most one ACTIVE/PAST_DUE subscription per user
        Index(
            "uq_subscriptions_current_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("status IN ('ACTIVE', 'PAST_DUE')"),
            postgresql_where=text("status IN ('ACTIVE', 'PAST_DUE')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(String, nullable=False)
    status = Column(
        Enum(SubscriptionStatus, native_enum=False, length=16),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    tier = Column(Enum(SubscriptionTier, native_enum=False, length=16), nullable=False)
    platform = Column(Enum(PaymentPlatform, native_enum=False, length=16), nullable=False)
    external_subscription_id = Column(String, unique=True, nullable=True, index=True)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)
    receipt = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="subscriptions")


class Order(Base):
    """Checkout order; only its payment confirmation is handled here."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_number = Column(String, unique=True, nullable=False)
    status = Column(Enum(OrderStatus, native_enum=False, length=16), default=OrderStatus.PENDING, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_intent_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class WebhookEvent(Base):
    """Ledger of gateway events already applied, keyed by the gateway's event id."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, unique=True, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime, default=utcnow, nullable=False)


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, index=True)
    event = Column(String, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
