import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from directrent.config import config
from directrent.database.core import AsyncSessionLocal
from directrent.services.entitlement_service import expire_subscriptions, refresh_free_allowances


async def expiry_sweep_job(session_factory: Optional[async_sessionmaker] = None) -> tuple[int, int]:
    """
    Downgrade lapsed subscriptions to FREE and start new FREE cycles.
    Returns: (expired_count, refreshed_count)
    """
    logging.info("Running subscription expiry sweep...")
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as session:
        expired = await expire_subscriptions(session)
        refreshed = await refresh_free_allowances(session)

    logging.info(f"Expiry sweep done: {expired} expired, {refreshed} FREE allowances refreshed")
    return expired, refreshed


async def scheduler_loop(session_factory: Optional[async_sessionmaker] = None):
    """Run the expiry sweep every EXPIRY_SWEEP_INTERVAL seconds."""
    interval = config.EXPIRY_SWEEP_INTERVAL
    logging.info(f"Scheduler started, sweeping every {interval}s.")

    # Initial delay to settle startup
    await asyncio.sleep(10)

    while True:
        try:
            await expiry_sweep_job(session_factory)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logging.info("Scheduler stopped.")
            raise
        except Exception as e:
            logging.error(f"Error in scheduler loop: {e}")
            await asyncio.sleep(60)  # Prevent tight loop on error
