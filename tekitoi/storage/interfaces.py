# tekitoi/storage/interfaces.py
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Type, TypeVar

from pydantic import ValidationError

from ..oauth.errors import StorageError
from ..oauth.models import Clock, ExpiringRecord, utc_now

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=ExpiringRecord)


class AbstractCorrelationStore(ABC):
    """
    Keyed, TTL-bound storage for the records that link the steps of an
    authorization flow.

    Backends only move JSON payloads around; this base class owns the
    (de)serialization and the expiry check, so every backend shares the
    same semantics:

    * ``put`` stores a record until its ``expires_at``.
    * ``take_once`` returns a live record and makes it unreachable for every
      later or concurrent caller. Losers of a race get ``None``.
    * ``get`` is a non-destructive read, used for access tokens and for
      peeking at a pending request before it is consumed.
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    @abstractmethod
    async def initialize(self) -> None:
        """Open connections and prepare the backend."""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Release connections."""
        pass

    @abstractmethod
    async def ping(self) -> None:
        """
        Check that the backend is reachable.

        Raises:
            StorageError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def store_payload(self, key: str, payload: str, expires_at: Optional[datetime]) -> None:
        pass

    @abstractmethod
    async def take_payload(self, key: str) -> Optional[str]:
        """Atomically fetch and delete the payload stored under key."""
        pass

    @abstractmethod
    async def load_payload(self, key: str) -> Optional[str]:
        pass

    async def purge_expired(self) -> int:
        """Delete expired records. Backends with native expiry have nothing to do."""
        return 0

    async def put(self, key: str, record: ExpiringRecord) -> None:
        """
        Store record under key until record.expires_at.

        Raises:
            StorageError: On backend failure
        """
        if record.is_expired(self.clock()):
            logger.warning(f"Refusing to store already expired record under '{self._redacted(key)}'.")
            return
        await self.store_payload(key, record.model_dump_json(), record.expires_at)

    async def take_once(self, key: str, model: Type[RecordT]) -> Optional[RecordT]:
        """
        Consume the record stored under key.

        Returns:
            The record, or None if it is unknown, expired or already consumed

        Raises:
            StorageError: On backend failure
        """
        payload = await self.take_payload(key)
        return self._decode(key, payload, model)

    async def get(self, key: str, model: Type[RecordT]) -> Optional[RecordT]:
        payload = await self.load_payload(key)
        return self._decode(key, payload, model)

    def _decode(self, key: str, payload: Optional[str], model: Type[RecordT]) -> Optional[RecordT]:
        if payload is None:
            return None
        try:
            record = model.model_validate_json(payload)
        except ValidationError as e:
            logger.error(f"Error deserializing {model.__name__} stored under '{self._redacted(key)}': {e}")
            return None
        if record.is_expired(self.clock()):
            logger.info(f"{model.__name__} under '{self._redacted(key)}' has expired.")
            return None
        return record

    @staticmethod
    def _redacted(key: str) -> str:
        """Keys embed codes and tokens; only a prefix is logged."""
        namespace, _, value = key.partition(":")
        return f"{namespace}:{value[:6]}..." if value else namespace


def storage_error(backend: str, exc: Exception) -> StorageError:
    logger.error(f"{backend} correlation store failure: {exc}", exc_info=True)
    return StorageError()
