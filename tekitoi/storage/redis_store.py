# tekitoi/storage/redis_store.py
import logging
import math
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..oauth.models import Clock, utc_now
from ..settings import Settings
from .interfaces import AbstractCorrelationStore, storage_error

logger = logging.getLogger(__name__)


class RedisCorrelationStore(AbstractCorrelationStore):
    """
    Redis-based correlation store. Expiry is delegated to Redis TTLs and
    consumption relies on GETDEL, so a key is handed out at most once.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[aioredis.Redis] = None,
        clock: Clock = utc_now
    ):
        super().__init__(clock)
        self.settings = settings
        self.key_prefix = settings.redis_key_prefix
        self._redis_client: Optional[aioredis.Redis] = client
        self._owns_client = client is None

    async def initialize(self) -> None:
        """Establish Redis connection with configured parameters."""
        if self._redis_client is None:
            connection_params = {
                "host": self.settings.redis_host,
                "port": self.settings.redis_port,
                "db": self.settings.redis_db,
                "ssl": self.settings.redis_ssl,
                "decode_responses": False,
            }
            if self.settings.redis_password:
                connection_params["password"] = self.settings.redis_password
            self._redis_client = aioredis.Redis(**connection_params)

        try:
            await self._redis_client.ping()
            logger.info("RedisCorrelationStore: Successfully connected to Redis.")
        except RedisError as e:
            logger.error(f"RedisCorrelationStore: Failed to connect: {e}", exc_info=True)
            if self._owns_client:
                await self._redis_client.aclose()
                self._redis_client = None
            raise

    async def teardown(self) -> None:
        """Clean up Redis connection."""
        if self._redis_client is not None and self._owns_client:
            await self._redis_client.aclose()
            logger.info("RedisCorrelationStore: Connection closed.")
        self._redis_client = None

    def _get_client(self) -> aioredis.Redis:
        if self._redis_client is None:
            raise RuntimeError("RedisCorrelationStore not initialized.")
        return self._redis_client

    def _get_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def ping(self) -> None:
        try:
            await self._get_client().ping()
        except RedisError as e:
            raise storage_error("Redis", e) from e

    async def store_payload(self, key: str, payload: str, expires_at: Optional[datetime]) -> None:
        ttl_seconds = None
        if expires_at is not None:
            ttl_seconds = math.ceil((expires_at - self.clock()).total_seconds())
            if ttl_seconds <= 0:
                return
        try:
            await self._get_client().set(self._get_key(key), payload.encode("utf-8"), ex=ttl_seconds)
        except RedisError as e:
            raise storage_error("Redis", e) from e

    async def take_payload(self, key: str) -> Optional[str]:
        try:
            data_bytes = await self._get_client().getdel(self._get_key(key))
        except RedisError as e:
            raise storage_error("Redis", e) from e
        return data_bytes.decode("utf-8") if data_bytes else None

    async def load_payload(self, key: str) -> Optional[str]:
        try:
            data_bytes = await self._get_client().get(self._get_key(key))
        except RedisError as e:
            raise storage_error("Redis", e) from e
        return data_bytes.decode("utf-8") if data_bytes else None
