# tekitoi/storage/sweeper.py
import asyncio
import logging

from ..oauth.errors import StorageError
from .interfaces import AbstractCorrelationStore

logger = logging.getLogger(__name__)


async def run_expiry_sweeper(store: AbstractCorrelationStore, interval_seconds: float) -> None:
    """
    Periodically delete expired correlation records until cancelled.
    A failed sweep is logged and retried at the next tick.
    """
    logger.info(f"Expiry sweeper started (every {interval_seconds}s) for {type(store).__name__}.")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await store.purge_expired()
        except StorageError:
            logger.warning("Expiry sweep failed; will retry at next interval.")
            continue
        logger.debug(f"Expiry sweep removed {removed} record(s).")
