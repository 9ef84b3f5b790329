"""
Expiry sweep for subscriptions whose billing period has ended.

Meant to be started by an external scheduler (cron, Render cron job):

    python -m jobs.subscription_sweeper
"""
import asyncio
import logging

from database import AsyncSessionLocal, init_db
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


async def run_expiry_sweep(session_factory=AsyncSessionLocal) -> int:
    """Expire every subscription past its period end in one transaction."""
    async with session_factory() as session:
        try:
            expired = await SubscriptionService(session).expire_due_subscriptions()
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(f"Subscription sweep finished: {expired} expired")
    return expired


async def main():
    await init_db()
    await run_expiry_sweep()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    asyncio.run(main())
