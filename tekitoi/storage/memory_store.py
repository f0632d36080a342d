# tekitoi/storage/memory_store.py
import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..oauth.models import Clock, utc_now
from .interfaces import AbstractCorrelationStore

logger = logging.getLogger(__name__)


class InMemoryCorrelationStore(AbstractCorrelationStore):
    """Process-local backend for tests and single-process development."""

    def __init__(self, clock: Clock = utc_now):
        super().__init__(clock)
        self._records: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        logger.info("InMemoryCorrelationStore initialized.")

    async def teardown(self) -> None:
        self._records.clear()
        logger.info("InMemoryCorrelationStore teardown.")

    async def ping(self) -> None:
        return None

    def _is_live(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is None or expires_at > self.clock()

    async def store_payload(self, key: str, payload: str, expires_at: Optional[datetime]) -> None:
        async with self._lock:
            self._records[key] = (payload, expires_at)

    async def take_payload(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._records.pop(key, None)
        if entry is None or not self._is_live(entry[1]):
            return None
        return entry[0]

    async def load_payload(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._records.get(key)
        if entry is None or not self._is_live(entry[1]):
            return None
        return entry[0]

    async def purge_expired(self) -> int:
        async with self._lock:
            expired = [key for key, (_, expires_at) in self._records.items() if not self._is_live(expires_at)]
            for key in expired:
                del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
