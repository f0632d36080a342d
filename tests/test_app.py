# tests/test_app.py
import asyncio
import contextlib
import json

from fastapi.testclient import TestClient

from tekitoi.main import create_app
from tekitoi.oauth.errors import StorageError
from tekitoi.settings import Settings
from tekitoi.storage import InMemoryCorrelationStore, SQLiteCorrelationStore, run_expiry_sweeper
from tests.oauth_helpers import authorize_params, credentials_dataset


class UnreachableStore(InMemoryCorrelationStore):
    async def ping(self) -> None:
        raise StorageError()

    async def store_payload(self, key, payload, expires_at) -> None:
        raise StorageError()


def test_status_is_no_content(client):
    response = client.get("/api/status")
    assert response.status_code == 204
    assert response.content == b""


def test_status_reports_storage_outage(settings, clock):
    app = create_app(settings=settings, store=UnreachableStore(clock=clock), clock=clock)
    with TestClient(app) as client:
        response = client.get("/api/status")
    assert response.status_code == 503
    assert response.json()["error"] == "temporarily_unavailable"


def test_storage_outage_during_authorize(settings, clock, tmp_path):
    dataset_path = tmp_path / "dataset.json"
    dataset_path.write_text(json.dumps(credentials_dataset()), encoding="utf-8")
    app_settings = settings.model_copy(update={"dataset_path": str(dataset_path)})
    app = create_app(settings=app_settings, store=UnreachableStore(clock=clock), clock=clock)
    with TestClient(app, follow_redirects=False) as client:
        response = client.get("/authorize", params=authorize_params())
    assert response.status_code == 503


def test_app_without_dataset_knows_no_client(settings):
    with TestClient(create_app(settings=settings)) as client:
        response = client.get("/authorize", params=authorize_params())
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_client"


def test_sqlite_backend_from_settings(tmp_path):
    dataset_path = tmp_path / "dataset.json"
    dataset_path.write_text(json.dumps(credentials_dataset()), encoding="utf-8")
    app_settings = Settings(
        storage_backend="sqlite",
        sqlite_db_path=str(tmp_path / "tekitoi.sqlite3"),
        dataset_path=str(dataset_path),
        expiry_sweep_interval_seconds=3600,
    )
    app = create_app(settings=app_settings)
    assert isinstance(app.state.store, SQLiteCorrelationStore)
    with TestClient(app, follow_redirects=False) as client:
        assert client.get("/api/status").status_code == 204
        response = client.post(
            "/authorize/credentials/login",
            params=authorize_params(),
            data={"email": "alice@example.com", "password": "secret123"},
        )
        assert response.status_code == 307


def test_upstream_redirect_url_uses_base_url():
    assert Settings(base_url="https://broker.example/").upstream_redirect_url() == "https://broker.example/api/redirect"
    assert Settings(host="0.0.0.0", port=8080).upstream_redirect_url() == "http://0.0.0.0:8080/api/redirect"


async def test_expiry_sweeper_purges_and_survives_errors(clock):
    calls = []

    class FlakyStore(InMemoryCorrelationStore):
        async def purge_expired(self) -> int:
            calls.append(True)
            if len(calls) == 1:
                raise StorageError()
            return 0

    task = asyncio.create_task(run_expiry_sweeper(FlakyStore(clock=clock), 0.01))
    while len(calls) < 3:
        await asyncio.sleep(0.01)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    assert len(calls) >= 3
