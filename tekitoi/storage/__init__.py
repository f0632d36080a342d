# tekitoi/storage/__init__.py
import logging

from ..oauth.models import Clock, utc_now
from ..settings import Settings
from .interfaces import AbstractCorrelationStore
from .memory_store import InMemoryCorrelationStore
from .redis_store import RedisCorrelationStore
from .sqlite_store import SQLiteCorrelationStore
from .sweeper import run_expiry_sweeper

logger = logging.getLogger(__name__)


def build_correlation_store(settings: Settings, clock: Clock = utc_now) -> AbstractCorrelationStore:
    """
    Factory function returning the correlation store selected by
    settings.storage_backend. The store still needs ``initialize()``.
    """
    backend = settings.storage_backend
    logger.info(f"Building correlation store for backend '{backend}'.")
    if backend == "sqlite":
        return SQLiteCorrelationStore(settings.sqlite_db_path, clock=clock)
    if backend == "redis":
        return RedisCorrelationStore(settings, clock=clock)
    if backend == "memory":
        return InMemoryCorrelationStore(clock=clock)
    raise ValueError(f"Unsupported storage_backend: {backend}")


__all__ = [
    "AbstractCorrelationStore",
    "InMemoryCorrelationStore",
    "RedisCorrelationStore",
    "SQLiteCorrelationStore",
    "build_correlation_store",
    "run_expiry_sweeper",
]
