import importlib
import threading
from contextlib import contextmanager

import pytest
from conftest import text
from fastapi.testclient import TestClient

from chatops.settings import reset_settings_cache


@pytest.fixture
def client(monkeypatch, world):
    monkeypatch.setenv("HYBRID_SWEEP_ENABLED", "false")
    monkeypatch.delenv("GATEWAY_WEBHOOK_TOKEN", raising=False)
    reset_settings_cache()

    import chatops.routers.webhooks as webhooks_router

    importlib.reload(webhooks_router)

    @contextmanager
    def fake_context():
        yield world.pipeline()
        world.repo.commit()

    monkeypatch.setattr(webhooks_router, "_service_context", fake_context)

    import chatops.main as main

    importlib.reload(main)
    yield TestClient(main.app)
    reset_settings_cache()


def test_message_upsert_is_ingested(client, world):
    resp = client.post("/api/webhooks/evolution", json=text("Olá"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["processed"] == 1
    assert body["results"][0]["message_id"] == "MSG1"
    assert body["results"][0]["conversation_id"] == 1
    assert len(world.repo.messages) == 1


def test_per_event_route_fills_in_event_name(client, world):
    payload = text("Olá")
    del payload["event"]

    resp = client.post("/api/webhooks/evolution/messages-upsert", json=payload)

    assert resp.status_code == 200
    assert resp.json()["event"] == "messages.upsert"
    assert len(world.repo.messages) == 1


def test_unhandled_event_is_acknowledged(client):
    resp = client.post(
        "/api/webhooks/evolution", json={"event": "presence.update", "instance": "main", "data": {}}
    )

    assert resp.status_code == 202
    assert resp.json()["status"] == "ignored"


def test_unknown_instance_is_acknowledged_without_error(client, world):
    resp = client.post("/api/webhooks/evolution", json=text("Olá", instance="ghost"))

    assert resp.status_code == 202
    assert resp.json() == {"status": "ignored", "event": "messages.upsert", "processed": 0, "results": []}
    assert world.repo.messages == {}


def test_invalid_json_is_rejected(client):
    resp = client.post(
        "/api/webhooks/evolution",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert resp.status_code == 400


def test_non_object_payload_is_rejected(client):
    resp = client.post("/api/webhooks/evolution", json=[1, 2, 3])

    assert resp.status_code == 400


def test_webhook_token_is_enforced(client, monkeypatch, world):
    monkeypatch.setenv("GATEWAY_WEBHOOK_TOKEN", "s3cret")
    reset_settings_cache()

    missing = client.post("/api/webhooks/evolution", json=text("Olá"))
    wrong = client.post("/api/webhooks/evolution", json=text("Olá"), headers={"apikey": "nope"})
    accepted = client.post(
        "/api/webhooks/evolution", json=text("Olá"), headers={"apikey": "s3cret"}
    )

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert accepted.status_code == 200
    assert len(world.repo.messages) == 1


def test_health_reports_sweep_state(client):
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "hybrid_sweep": False}


def test_ingestion_runs_off_the_event_loop_thread(client, monkeypatch, world):
    import chatops.routers.webhooks as webhooks_router

    loop_threads = []
    ingest_threads = []

    @contextmanager
    def recording_context():
        ingest_threads.append(threading.get_ident())
        yield world.pipeline()
        world.repo.commit()

    read_payload = webhooks_router._read_payload

    async def recording_read(request):
        loop_threads.append(threading.get_ident())
        return await read_payload(request)

    monkeypatch.setattr(webhooks_router, "_service_context", recording_context)
    monkeypatch.setattr(webhooks_router, "_read_payload", recording_read)

    resp = client.post("/api/webhooks/evolution", json=text("Olá"))

    assert resp.status_code == 200
    assert len(world.repo.messages) == 1
    assert ingest_threads and loop_threads
    assert ingest_threads[0] != loop_threads[0]
