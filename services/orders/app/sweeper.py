"""
Background task that expires stale pending payments on a fixed interval.
"""
import asyncio
import logging

from .database import SessionLocal
from .reconciler import expire_stale_payments

logger = logging.getLogger(__name__)


def sweep_once() -> int:
    db = SessionLocal()
    try:
        return expire_stale_payments(db)
    finally:
        db.close()


async def run_expiry_sweeper(interval_seconds: int) -> None:
    """
    Run ``sweep_once`` every ``interval_seconds`` until cancelled.

    A failed sweep is logged and the loop carries on with the next tick.
    """
    logger.info(f"Payment expiry sweeper started (every {interval_seconds}s)")
    while True:
        try:
            await asyncio.to_thread(sweep_once)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Payment expiry sweep failed: {e}")
        await asyncio.sleep(interval_seconds)
