import importlib

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from chatops.settings import reset_settings_cache


@pytest.fixture
def main_module(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("HYBRID_SWEEP_ENABLED", "false")
    reset_settings_cache()
    import chatops.main as main

    importlib.reload(main)
    yield main
    reset_settings_cache()


def _request(headers=None, client=("10.0.0.9", 1234)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def test_client_ip_prefers_first_forwarded_hop(main_module):
    forwarded = _request({"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

    assert main_module.get_client_ip(forwarded) == "203.0.113.7"
    assert main_module.get_client_ip(_request()) == "10.0.0.9"
    assert main_module.get_client_ip(_request(client=None)) == "unknown"


def test_version_endpoint(main_module):
    with TestClient(main_module.app) as client:
        body = client.get("/api/version").json()

    assert body["version"] == main_module.__version__
    assert set(body) == {"version", "build_date", "commit_sha"}


def test_sweeper_disabled_by_flag(main_module):
    assert main_module.build_sweeper() is None


def test_sweeper_requires_database(main_module, monkeypatch):
    monkeypatch.setenv("HYBRID_SWEEP_ENABLED", "true")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    reset_settings_cache()

    assert main_module.build_sweeper() is None


def test_sweeper_built_from_settings(main_module, monkeypatch):
    monkeypatch.setenv("HYBRID_SWEEP_ENABLED", "true")
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@localhost/db")
    monkeypatch.setenv("HYBRID_SWEEP_INTERVAL_SECONDS", "15")
    reset_settings_cache()

    sweeper = main_module.build_sweeper()

    assert sweeper is not None
    assert not sweeper.running
    assert sweeper._interval == 15.0
