"""
OrderRepository for the order confirmation path
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Order
from models.order import OrderStatus


class OrderRepository:
    """
    Repository class for Order rows. Only the payment confirmation step
    writes orders here; checkout lives outside this service.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def mark_confirmed(self, order_id: int, payment_intent_id: str) -> Optional[Order]:
        """Set an order CONFIRMED and record the paying intent; None if the order is unknown."""
        order = await self.get_by_id(order_id)
        if order is None:
            return None
        order.status = OrderStatus.CONFIRMED
        order.payment_intent_id = payment_intent_id
        await self.db.flush()
        return order
