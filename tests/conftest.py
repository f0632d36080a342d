# tests/conftest.py
from typing import Any, Callable, Dict, Iterator, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from tekitoi.main import create_app
from tekitoi.registry import ClientRegistry
from tekitoi.settings import Settings
from tekitoi.storage import InMemoryCorrelationStore
from tests.oauth_helpers import FakeClock, credentials_dataset


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        base_url="https://broker.example",
        expiry_sweep_interval_seconds=0,
        dataset_path=None,
        token_encryption_key=None,
    )


@pytest.fixture
def build_client(settings: Settings, clock: FakeClock) -> Iterator[Callable[..., TestClient]]:
    """Factory building a TestClient around a fresh app and in-memory store."""
    opened = []

    def _build(
        dataset: Optional[Dict[str, Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        app_settings: Optional[Settings] = None,
    ) -> TestClient:
        registry = ClientRegistry.from_dataset(dataset or credentials_dataset())
        store = InMemoryCorrelationStore(clock=clock)
        app = create_app(
            settings=app_settings or settings,
            registry=registry,
            store=store,
            http_client=http_client,
            clock=clock,
        )
        client = TestClient(app, follow_redirects=False)
        client.__enter__()
        opened.append(client)
        return client

    yield _build
    for client in opened:
        client.__exit__(None, None, None)


@pytest.fixture
def client(build_client) -> TestClient:
    return build_client()
