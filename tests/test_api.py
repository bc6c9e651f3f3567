"""
Tests for the REST API.
"""

import pytest
from fastapi.testclient import TestClient

from jobkeeper.config import Config
from jobkeeper.keeper import Keeper
from jobkeeper.main import create_app


@pytest.fixture
def keeper(tmp_path, clock, sampler):
    keeper = Keeper(Config(data_dir=tmp_path), clock=clock, sampler=sampler)
    yield keeper
    keeper.close()


@pytest.fixture
def client(keeper):
    return TestClient(create_app(keeper, run_scheduler=False))


def test_status(client):
    response = client.get("/api/status")

    assert response.status_code == 200
    assert response.json()["dead_letters"] == 0


def test_heartbeat_registers_session(client):
    response = client.post("/api/sessions/job-1/heartbeat", json={"metadata": {"job_class": "app.jobs.Import"}})

    assert response.status_code == 200
    assert response.json()["session_id"] == "job-1"

    session = client.get("/api/sessions/job-1").json()
    assert session["job_class"] == "app.jobs.Import"
    assert session["health"]["status"] == "unknown"
    assert len(client.get("/api/sessions/job-1/heartbeats").json()) == 1


def test_heartbeat_for_finished_session_conflicts(client, keeper):
    session_id = keeper.supervisor.supervise("app.jobs.Import")
    keeper.supervisor.complete(session_id)

    response = client.post(f"/api/sessions/{session_id}/heartbeat", json={})

    assert response.status_code == 409


def test_progress(client, keeper):
    session_id = keeper.supervisor.supervise("app.jobs.Import")

    response = client.post(f"/api/sessions/{session_id}/progress", json={"current": 1, "total": 4})

    assert response.status_code == 200
    assert response.json()["metadata"]["progress_percentage"] == 25.0


def test_unknown_session_is_404(client):
    assert client.get("/api/sessions/missing").status_code == 404
    assert client.get("/api/health/missing").status_code == 404
    assert client.get("/api/sessions/missing/violations").status_code == 404


def test_stuck_sessions(client, keeper, clock):
    session_id = keeper.supervisor.supervise("app.jobs.Import")
    for _ in range(3):
        clock.advance(keeper.config.heartbeat.interval_seconds + 1)
        keeper.heartbeats.sweep_for_stuck()

    stuck = client.get("/api/sessions/stuck").json()

    assert [s["session_id"] for s in stuck] == [session_id]


def test_health_endpoints(client, keeper):
    session_id = keeper.supervisor.supervise("app.jobs.Import")
    keeper.health.mark_unhealthy(session_id, "heartbeat is stale")

    assert [h["session_id"] for h in client.get("/api/health", params={"unhealthy": True}).json()] == [session_id]

    checked = client.post(f"/api/health/{session_id}/check").json()
    assert checked["status"] == "healthy"
    assert client.get("/api/health", params={"unhealthy": True}).json() == []


def test_breaker_endpoints(client):
    assert client.get("/api/breakers/payments").status_code == 404

    response = client.post("/api/breakers/payments", json={"action": "open"})
    assert response.status_code == 200
    assert response.json()["state"] == "open"

    assert [b["service"] for b in client.get("/api/breakers").json()] == ["payments"]
    assert client.post("/api/breakers/payments", json={"action": "explode"}).status_code == 422

    client.post("/api/breakers/payments", json={"action": "reset"})
    assert client.get("/api/breakers/payments").json()["state"] == "closed"

    assert client.delete("/api/breakers/payments").status_code == 200
    assert client.delete("/api/breakers/payments").status_code == 404


def test_dead_letter_endpoints(client, keeper):
    session_id = keeper.supervisor.supervise("app.jobs.Import", payload={"file": "a.csv"})
    for _ in range(keeper.config.dead_letter.max_retries):
        keeper.supervisor.fail(session_id, ValueError("bad row"))

    entries = client.get("/api/dead-letters").json()
    assert len(entries) == 1
    entry_id = entries[0]["id"]
    assert client.get(f"/api/dead-letters/{entry_id}").json()["payload"] == {"file": "a.csv"}

    retried = client.post(f"/api/dead-letters/{entry_id}/retry").json()
    assert retried["retry_count"] == 1
    assert keeper.queue_backend.dispatched[0].payload == {"file": "a.csv"}

    assert client.post("/api/dead-letters/999/retry").status_code == 404
    assert client.get("/api/dead-letters/999").status_code == 404
    assert client.post("/api/dead-letters/prune", json={"retention_days": 0}).json()["deleted"] == 0


def test_pools_and_queues(client, keeper):
    keeper.worker_pool("imports", ["true"])

    assert [p["name"] for p in client.get("/api/pools").json()] == ["imports"]
    assert client.get("/api/pools/imports").json()["workers"] == []
    assert client.get("/api/pools/missing").status_code == 404

    queues = client.get("/api/queues").json()
    assert "mode" in queues

    keeper.queue_backend.pause("billing")
    queue = client.get("/api/queues/billing").json()
    assert queue["paused"] is True
    assert queue["running"] == 0
