from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import maintenance as maintenance_api
from api import memory as memory_api
from memory_engine import StoreUnavailableError
from runtime_state import RuntimeState, WriteLaneCoordinator


class _FakeEngine:
    def __init__(self, *, store_down: bool = False) -> None:
        self.write_lanes = WriteLaneCoordinator(global_concurrency=2)
        self.store_down = store_down
        self.decay_calls = 0

    async def apply_decay_cycle(self):
        self.decay_calls += 1
        return {"applied": True, "deleted": 0, "updated": 3}

    async def rebuild_index(self):
        if self.store_down:
            raise StoreUnavailableError("rebuild_index", "connection refused")
        return {"indexed": 3, "context_keys": 1, "tag_keys": 2, "counterparty_keys": 0}

    async def export_memories(self, context_filter=None):
        return [{"id": "m-1", "agent_id": context_filter.agent_id, "content": "hello"}]


def _build_client(engine=None, *, client=("testclient", 50000)) -> TestClient:
    app = FastAPI()
    app.include_router(maintenance_api.router)
    app.include_router(memory_api.router)
    app.state.engine = engine or _FakeEngine()
    app.state.runtime = RuntimeState()
    return TestClient(app, client=client)


def test_maintenance_auth_rejects_when_api_key_not_configured_by_default(monkeypatch) -> None:
    monkeypatch.delenv("MAINTENANCE_API_KEY", raising=False)
    monkeypatch.delenv("MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client() as client:
        response = client.post("/maintenance/decay")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("error") == "maintenance_auth_failed"
    assert detail.get("reason") == "api_key_not_configured"


def test_maintenance_auth_allows_when_explicit_insecure_local_override_is_enabled(monkeypatch) -> None:
    monkeypatch.delenv("MAINTENANCE_API_KEY", raising=False)
    monkeypatch.setenv("MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(client=("127.0.0.1", 50000)) as client:
        response = client.post("/maintenance/decay")
    assert response.status_code == 200
    assert response.json().get("ok") is True


def test_maintenance_auth_rejects_insecure_local_override_for_non_loopback_client(monkeypatch) -> None:
    monkeypatch.delenv("MAINTENANCE_API_KEY", raising=False)
    monkeypatch.setenv("MAINTENANCE_API_KEY_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(client=("203.0.113.10", 50000)) as client:
        response = client.post("/maintenance/decay")
    assert response.status_code == 401
    detail = response.json().get("detail") or {}
    assert detail.get("reason") == "insecure_local_override_requires_loopback"


def test_maintenance_auth_rejects_wrong_key(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_API_KEY", "decay-secret")
    headers = {"X-Maintenance-API-Key": "not-it"}
    with _build_client() as client:
        response = client.post("/maintenance/decay", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


def test_maintenance_auth_accepts_header_and_runs_decay(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_API_KEY", "decay-secret")
    engine = _FakeEngine()
    headers = {"X-Maintenance-API-Key": "decay-secret"}
    with _build_client(engine) as client:
        response = client.post("/maintenance/decay?reason=manual", headers=headers)
        status_response = client.get("/maintenance/decay/status", headers=headers)
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["result"]["trigger"] == "manual"
    assert engine.decay_calls == 1
    assert status_response.json()["runs"] == 1
    assert status_response.json()["scheduler"] == {"started": False}


def test_maintenance_auth_accepts_bearer_token(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_API_KEY", "decay-secret")
    headers = {"Authorization": "Bearer decay-secret"}
    with _build_client() as client:
        response = client.get("/maintenance/write-lanes", headers=headers)
    assert response.status_code == 200
    assert response.json()["global_concurrency"] == 2


def test_index_rebuild_reports_store_outage(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_API_KEY", "decay-secret")
    headers = {"X-Maintenance-API-Key": "decay-secret"}
    with _build_client(_FakeEngine(store_down=True)) as client:
        response = client.post("/maintenance/index/rebuild", headers=headers)
    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "store_unavailable"


def test_export_requires_maintenance_key(monkeypatch) -> None:
    monkeypatch.setenv("MAINTENANCE_API_KEY", "decay-secret")
    with _build_client() as client:
        rejected = client.get("/memory/export?agent_id=npc-1")
        accepted = client.get(
            "/memory/export?agent_id=npc-1",
            headers={"X-Maintenance-API-Key": "decay-secret"},
        )
    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json()["memories"][0]["agent_id"] == "npc-1"
