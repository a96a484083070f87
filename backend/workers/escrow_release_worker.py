import asyncio
import logging

from config.env import ESCROW_SWEEP_INTERVAL_SECONDS
from utils.escrow_service import sweep_eligible_releases

logger = logging.getLogger(__name__)


async def escrow_release_worker(store, interval_seconds: int = ESCROW_SWEEP_INTERVAL_SECONDS):
    """
    Periodically releases escrow whose return window has lapsed.
    Each release re-checks eligibility inside its own transaction.
    """
    logger.info("ESCROW_SWEEP_STARTED interval=%ss", interval_seconds)

    while True:
        try:
            await sweep_eligible_releases(store)
        except Exception:
            # Never crash the worker for one bad sweep
            logger.exception("ESCROW_SWEEP_ERROR")

        await asyncio.sleep(interval_seconds)
