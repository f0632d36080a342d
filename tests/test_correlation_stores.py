# tests/test_correlation_stores.py
import asyncio
import threading
from collections import Counter
from datetime import timedelta
from typing import Dict, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tekitoi.oauth.errors import StorageError
from tekitoi.oauth.models import PendingAuthorizationRequest
from tekitoi.settings import Settings
from tekitoi.storage import (
    InMemoryCorrelationStore,
    RedisCorrelationStore,
    SQLiteCorrelationStore,
    build_correlation_store,
)
from tests.oauth_helpers import CLIENT_ID, CODE_CHALLENGE, REDIRECT_URI, STATE, FakeClock


class FakeRedis:
    """The subset of redis.asyncio.Redis the correlation store relies on."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: Dict[bytes, tuple] = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _live(self, key: bytes) -> Optional[bytes]:
        entry = self.data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline is not None and deadline <= self.clock():
            del self.data[key]
            return None
        return value

    async def ping(self):
        self._check()
        return True

    async def set(self, key, value, ex=None):
        self._check()
        deadline = self.clock() + timedelta(seconds=ex) if ex is not None else None
        self.data[key.encode()] = (value, deadline)
        return True

    async def get(self, key):
        self._check()
        return self._live(key.encode())

    async def getdel(self, key):
        self._check()
        value = self._live(key.encode())
        self.data.pop(key.encode(), None)
        return value

    async def aclose(self):
        self.closed = True


def _pending(clock: FakeClock, request_id: str = "req-1", ttl_seconds: int = 600) -> PendingAuthorizationRequest:
    now = clock()
    return PendingAuthorizationRequest(
        id=request_id,
        application_id=CLIENT_ID,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        state=STATE,
        code_challenge=CODE_CHALLENGE,
        code_challenge_method="S256",
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def store(request, clock, tmp_path):
    if request.param == "memory":
        backend = InMemoryCorrelationStore(clock=clock)
    elif request.param == "sqlite":
        backend = SQLiteCorrelationStore(str(tmp_path / "tekitoi.sqlite3"), clock=clock)
    else:
        backend = RedisCorrelationStore(Settings(), client=FakeRedis(clock), clock=clock)
    await backend.initialize()
    yield backend
    await backend.teardown()


async def test_take_once_returns_record_a_single_time(store, clock):
    record = _pending(clock)
    await store.put("pending:req-1", record)

    taken = await store.take_once("pending:req-1", PendingAuthorizationRequest)
    assert taken == record
    assert await store.take_once("pending:req-1", PendingAuthorizationRequest) is None


async def test_get_does_not_consume(store, clock):
    await store.put("pending:req-1", _pending(clock))
    assert await store.get("pending:req-1", PendingAuthorizationRequest) is not None
    assert await store.get("pending:req-1", PendingAuthorizationRequest) is not None
    assert await store.take_once("pending:req-1", PendingAuthorizationRequest) is not None


async def test_unknown_key(store):
    assert await store.take_once("pending:missing", PendingAuthorizationRequest) is None
    assert await store.get("pending:missing", PendingAuthorizationRequest) is None


async def test_expired_record_is_absent(store, clock):
    await store.put("pending:req-1", _pending(clock, ttl_seconds=60))
    clock.advance(61)
    assert await store.get("pending:req-1", PendingAuthorizationRequest) is None
    assert await store.take_once("pending:req-1", PendingAuthorizationRequest) is None


async def test_already_expired_record_is_not_stored(store, clock):
    await store.put("pending:req-1", _pending(clock, ttl_seconds=-1))
    assert await store.get("pending:req-1", PendingAuthorizationRequest) is None


async def test_concurrent_take_once_has_a_single_winner(store, clock):
    await store.put("code:abc", _pending(clock))
    results = await asyncio.gather(*[
        store.take_once("code:abc", PendingAuthorizationRequest) for _ in range(10)
    ])
    assert sum(result is not None for result in results) == 1


def test_sqlite_take_once_across_connections_has_a_single_winner(clock, tmp_path):
    db_path = str(tmp_path / "race.sqlite3")
    keys = [f"code:{index}" for index in range(30)]
    seed = SQLiteCorrelationStore(db_path, clock=clock)
    asyncio.run(seed.initialize())
    for key in keys:
        asyncio.run(seed.put(key, _pending(clock, key)))

    workers = 4
    stores = [SQLiteCorrelationStore(db_path, clock=clock) for _ in range(workers)]
    for worker_store in stores:
        asyncio.run(worker_store.initialize())
    barrier = threading.Barrier(workers)
    wins = Counter()
    wins_lock = threading.Lock()
    errors = []

    async def consume(worker_store):
        for key in keys:
            if await worker_store.take_once(key, PendingAuthorizationRequest) is not None:
                with wins_lock:
                    wins[key] += 1

    def run(worker_store):
        try:
            barrier.wait()
            asyncio.run(consume(worker_store))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(worker_store,)) for worker_store in stores]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    for worker_store in stores + [seed]:
        asyncio.run(worker_store.teardown())

    assert errors == []
    assert wins == Counter({key: 1 for key in keys})


async def test_ping(store):
    await store.ping()


async def test_memory_purge_expired(clock):
    store = InMemoryCorrelationStore(clock=clock)
    await store.put("pending:a", _pending(clock, "a", ttl_seconds=10))
    await store.put("pending:b", _pending(clock, "b", ttl_seconds=100))
    clock.advance(50)
    assert await store.purge_expired() == 1
    assert len(store) == 1


async def test_sqlite_purge_expired(clock, tmp_path):
    store = SQLiteCorrelationStore(str(tmp_path / "purge.sqlite3"), clock=clock)
    await store.initialize()
    try:
        await store.put("pending:a", _pending(clock, "a", ttl_seconds=10))
        await store.put("pending:b", _pending(clock, "b", ttl_seconds=100))
        clock.advance(50)
        assert await store.purge_expired() == 1
        assert await store.get("pending:b", PendingAuthorizationRequest) is not None
    finally:
        await store.teardown()


async def test_sqlite_records_survive_reopen(clock, tmp_path):
    db_path = str(tmp_path / "reopen.sqlite3")
    first = SQLiteCorrelationStore(db_path, clock=clock)
    await first.initialize()
    await first.put("pending:req-1", _pending(clock))
    await first.teardown()

    second = SQLiteCorrelationStore(db_path, clock=clock)
    await second.initialize()
    try:
        assert await second.take_once("pending:req-1", PendingAuthorizationRequest) is not None
    finally:
        await second.teardown()


async def test_redis_failures_become_storage_errors(clock):
    fake = FakeRedis(clock)
    store = RedisCorrelationStore(Settings(), client=fake, clock=clock)
    await store.initialize()
    fake.fail = True
    with pytest.raises(StorageError):
        await store.put("pending:req-1", _pending(clock))
    with pytest.raises(StorageError):
        await store.take_once("pending:req-1", PendingAuthorizationRequest)
    with pytest.raises(StorageError):
        await store.ping()


async def test_redis_keys_are_prefixed_and_injected_client_is_kept_open(clock):
    fake = FakeRedis(clock)
    store = RedisCorrelationStore(Settings(redis_key_prefix="t:"), client=fake, clock=clock)
    await store.initialize()
    await store.put("pending:req-1", _pending(clock))
    assert b"t:pending:req-1" in fake.data
    await store.teardown()
    assert not fake.closed


def test_build_correlation_store(tmp_path):
    assert isinstance(build_correlation_store(Settings(storage_backend="memory")), InMemoryCorrelationStore)
    sqlite_settings = Settings(storage_backend="sqlite", sqlite_db_path=str(tmp_path / "x.sqlite3"))
    assert isinstance(build_correlation_store(sqlite_settings), SQLiteCorrelationStore)
    assert isinstance(build_correlation_store(Settings(storage_backend="redis")), RedisCorrelationStore)
    with pytest.raises(ValueError):
        build_correlation_store(Settings(storage_backend="mongo"))
