"""
Unit tests for SubscriptionService state transitions and purchase flows
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import FakePaymentService, create_subscription_row, create_user
from database_models import AnalyticsEvent, Subscription
from models.subscription import (
    PaymentPlatform,
    ReceiptValidationResult,
    SubscriptionStatus,
    SubscriptionTier,
)
from services.subscription_service import SubscriptionService
from utils.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from utils.shared_utils import utcnow


@pytest.mark.asyncio
async def test_create_subscription_sets_user_tier(test_db):
    user = await create_user(test_db)
    service = SubscriptionService(test_db)
    now = utcnow()

    subscription = await service.create_subscription(
        user_id=user.id,
        plan_id="premium_monthly",
        tier=SubscriptionTier.PREMIUM,
        platform=PaymentPlatform.STRIPE,
        external_subscription_id="sub_1",
        period_start=now,
        period_end=now + timedelta(days=30),
    )

    assert subscription.status == SubscriptionStatus.ACTIVE
    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_second_current_subscription_conflicts(test_db):
    user = await create_user(test_db)
    await create_subscription_row(test_db, user)
    service = SubscriptionService(test_db)
    now = utcnow()

    with pytest.raises(ConflictError):
        await service.create_subscription(
            user_id=user.id,
            plan_id="standard_monthly",
            tier=SubscriptionTier.STANDARD,
            platform=PaymentPlatform.STRIPE,
            external_subscription_id="sub_2",
            period_start=now,
            period_end=now + timedelta(days=30),
        )

    result = await test_db.execute(select(Subscription).where(Subscription.user_id == user.id))
    assert len(result.scalars().all()) == 1


@pytest.mark.asyncio
async def test_past_due_keeps_tier(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    subscription = await create_subscription_row(test_db, user)

    await SubscriptionService(test_db).transition(subscription.id, SubscriptionStatus.PAST_DUE)

    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.INACTIVE,
])
async def test_revoking_status_drops_to_free(test_db, status):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    subscription = await create_subscription_row(test_db, user)
    service = SubscriptionService(test_db)

    updated = await service.transition(subscription.id, status)
    # Re-applying the same transition changes nothing
    await service.transition(subscription.id, status)

    assert updated.status == status
    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_revoking_old_record_keeps_current_tier(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.STANDARD)
    old = await create_subscription_row(
        test_db, user, status=SubscriptionStatus.EXPIRED, external_id="sub_old",
    )
    await create_subscription_row(
        test_db, user, tier=SubscriptionTier.STANDARD, external_id="sub_new",
    )

    await SubscriptionService(test_db).transition(old.id, SubscriptionStatus.CANCELLED)

    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.STANDARD


@pytest.mark.asyncio
async def test_transition_unknown_subscription(test_db):
    with pytest.raises(NotFoundError):
        await SubscriptionService(test_db).transition(999, SubscriptionStatus.ACTIVE)


@pytest.mark.asyncio
async def test_expire_due_subscriptions(test_db):
    lapsed = await create_user(test_db, email="lapsed@example.com", tier=SubscriptionTier.PREMIUM)
    current = await create_user(test_db, email="current@example.com", tier=SubscriptionTier.PREMIUM)
    await create_subscription_row(test_db, lapsed, period_end_delta=timedelta(days=-1), external_id="sub_lapsed")
    await create_subscription_row(test_db, current, external_id="sub_current")

    service = SubscriptionService(test_db)
    assert await service.expire_due_subscriptions() == 1
    assert await service.expire_due_subscriptions() == 0

    await test_db.refresh(lapsed)
    await test_db.refresh(current)
    assert lapsed.subscription_tier == SubscriptionTier.FREE
    assert current.subscription_tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_read_expires_lapsed_active_subscription(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    await create_subscription_row(test_db, user, period_end_delta=timedelta(hours=-1))

    subscription, is_expired = await SubscriptionService(test_db).read_current_subscription(user.id)

    assert is_expired is True
    assert subscription.status == SubscriptionStatus.EXPIRED
    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.FREE


@pytest.mark.asyncio
async def test_check_access_ignores_stale_stored_tier(test_db):
    # Stored tier says PREMIUM but the subscription period is over
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    await create_subscription_row(test_db, user, period_end_delta=timedelta(days=-2))

    access = await SubscriptionService(test_db).check_access(user.id)

    assert access.tier == SubscriptionTier.FREE
    assert access.has_active_subscription is False


@pytest.mark.asyncio
async def test_check_access_past_due_keeps_access(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.STANDARD)
    await create_subscription_row(
        test_db, user, tier=SubscriptionTier.STANDARD, status=SubscriptionStatus.PAST_DUE,
    )

    access = await SubscriptionService(test_db).check_access(user.id)

    assert access.tier == SubscriptionTier.STANDARD
    assert access.max_downloads == 10


@pytest.mark.asyncio
async def test_check_access_unknown_user(test_db):
    with pytest.raises(NotFoundError):
        await SubscriptionService(test_db).check_access(12345)


@pytest.mark.asyncio
async def test_purchase_subscription(test_db):
    user = await create_user(test_db)
    gateway = FakePaymentService()

    subscription, secret = await SubscriptionService(test_db, gateway).purchase_subscription(user, "premium_monthly")

    assert secret == "pi_secret_test"
    assert subscription.tier == SubscriptionTier.PREMIUM
    assert subscription.platform == PaymentPlatform.STRIPE
    assert subscription.external_subscription_id == "sub_test_1"
    assert subscription.current_period_end > utcnow()
    assert gateway.created[0]["price_id"] == "price_premium_test"

    await test_db.flush()
    events = (await test_db.execute(select(AnalyticsEvent))).scalars().all()
    assert [event.event for event in events] == ["subscription_created"]


@pytest.mark.asyncio
async def test_purchase_unknown_plan(test_db):
    user = await create_user(test_db)
    gateway = FakePaymentService()

    with pytest.raises(ValidationError):
        await SubscriptionService(test_db, gateway).purchase_subscription(user, "gold_yearly")
    assert gateway.created == []


@pytest.mark.asyncio
async def test_purchase_while_subscribed_skips_gateway(test_db):
    user = await create_user(test_db)
    await create_subscription_row(test_db, user)
    gateway = FakePaymentService()

    with pytest.raises(ConflictError):
        await SubscriptionService(test_db, gateway).purchase_subscription(user, "standard_monthly")
    assert gateway.created == []


@pytest.mark.asyncio
async def test_purchase_without_gateway(test_db):
    user = await create_user(test_db)

    with pytest.raises(UpstreamError):
        await SubscriptionService(test_db).purchase_subscription(user, "standard_monthly")


@pytest.mark.asyncio
async def test_cancel_keeps_access_until_period_end(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    await create_subscription_row(test_db, user, external_id="sub_to_cancel")
    gateway = FakePaymentService()
    service = SubscriptionService(test_db, gateway)

    subscription = await service.cancel_subscription(user.id)

    assert gateway.cancelled == ["sub_to_cancel"]
    assert subscription.cancel_at_period_end is True
    assert subscription.canceled_at is not None
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert (await service.check_access(user.id)).tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_cancel_without_subscription(test_db):
    user = await create_user(test_db)

    with pytest.raises(NotFoundError):
        await SubscriptionService(test_db, FakePaymentService()).cancel_subscription(user.id)


@pytest.mark.asyncio
async def test_cancel_mobile_subscription_skips_gateway(test_db):
    user = await create_user(test_db)
    await create_subscription_row(
        test_db, user, platform=PaymentPlatform.GOOGLE_PLAY, external_id="GPA.1234",
    )
    gateway = FakePaymentService()

    subscription = await SubscriptionService(test_db, gateway).cancel_subscription(user.id)

    assert gateway.cancelled == []
    assert subscription.cancel_at_period_end is True


def _receipt(**overrides) -> ReceiptValidationResult:
    now = utcnow()
    values = {
        "is_valid": True,
        "product_id": "premium_monthly",
        "transaction_id": "1000000001",
        "original_transaction_id": "1000000000",
        "purchase_date": now,
        "expires_at": now + timedelta(days=30),
        "receipt_data": {"status": 0},
    }
    values.update(overrides)
    return ReceiptValidationResult(**values)


@pytest.mark.asyncio
async def test_apply_receipt_creates_subscription(test_db):
    user = await create_user(test_db)

    subscription = await SubscriptionService(test_db).apply_receipt(
        user.id, PaymentPlatform.APPLE_STORE, _receipt(),
    )

    assert subscription.platform == PaymentPlatform.APPLE_STORE
    assert subscription.external_subscription_id == "1000000000"
    assert subscription.tier == SubscriptionTier.PREMIUM
    await test_db.refresh(user)
    assert user.subscription_tier == SubscriptionTier.PREMIUM


@pytest.mark.asyncio
async def test_apply_receipt_renewal_updates_same_row(test_db):
    user = await create_user(test_db)
    service = SubscriptionService(test_db)
    first = await service.apply_receipt(user.id, PaymentPlatform.APPLE_STORE, _receipt())

    renewed_until = utcnow() + timedelta(days=60)
    renewed = await service.apply_receipt(
        user.id,
        PaymentPlatform.APPLE_STORE,
        _receipt(transaction_id="1000000002", expires_at=renewed_until),
    )

    assert renewed.id == first.id
    assert renewed.current_period_end == renewed_until


@pytest.mark.asyncio
async def test_apply_receipt_linked_to_other_user(test_db):
    owner = await create_user(test_db, email="owner@example.com")
    other = await create_user(test_db, email="other@example.com")
    service = SubscriptionService(test_db)
    await service.apply_receipt(owner.id, PaymentPlatform.APPLE_STORE, _receipt())

    with pytest.raises(ConflictError):
        await service.apply_receipt(other.id, PaymentPlatform.APPLE_STORE, _receipt())


@pytest.mark.asyncio
async def test_apply_invalid_receipt(test_db):
    user = await create_user(test_db)

    with pytest.raises(ValidationError):
        await SubscriptionService(test_db).apply_receipt(
            user.id, PaymentPlatform.GOOGLE_PLAY, ReceiptValidationResult(is_valid=False, error="bad"),
        )


@pytest.mark.asyncio
async def test_lazy_expiry_is_repeatable(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    subscription = await create_subscription_row(test_db, user, period_end_delta=timedelta(hours=-2))
    service = SubscriptionService(test_db)

    first = await service.check_access(user.id)
    second = await service.check_access(user.id)

    assert first == second
    assert first.tier == SubscriptionTier.FREE
    await test_db.refresh(subscription)
    assert subscription.status == SubscriptionStatus.EXPIRED

    # Once expired the record is no longer current, so a read finds nothing
    assert await service.read_current_subscription(user.id) == (None, False)
    assert await service.read_current_subscription(user.id) == (None, False)


@pytest.mark.asyncio
async def test_reactivating_while_another_is_current_conflicts(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    old = await create_subscription_row(
        test_db, user, status=SubscriptionStatus.EXPIRED, external_id="sub_expired",
    )
    await create_subscription_row(test_db, user, external_id="sub_live")
    service = SubscriptionService(test_db)

    for status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
        with pytest.raises(ConflictError):
            await service.transition(old.id, status)

    await test_db.refresh(old)
    assert old.status == SubscriptionStatus.EXPIRED


@pytest.mark.asyncio
async def test_receipt_for_expired_record_while_stripe_is_live_conflicts(test_db):
    user = await create_user(test_db, tier=SubscriptionTier.PREMIUM)
    await create_subscription_row(test_db, user, external_id="sub_stripe_live")
    apple_row = await create_subscription_row(
        test_db,
        user,
        status=SubscriptionStatus.EXPIRED,
        external_id="apple_orig_1",
        platform=PaymentPlatform.APPLE_STORE,
        period_end_delta=timedelta(days=-5),
    )
    service = SubscriptionService(test_db)

    with pytest.raises(ConflictError):
        await service.apply_receipt(
            user.id,
            PaymentPlatform.APPLE_STORE,
            _receipt(original_transaction_id="apple_orig_1"),
        )

    await test_db.refresh(apple_row)
    await test_db.refresh(user)
    assert apple_row.status == SubscriptionStatus.EXPIRED
    assert user.subscription_tier == SubscriptionTier.PREMIUM
