"""
Tests for the FastAPI surface.
"""
from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient

from packhost.app.dependencies import get_settings, set_host
from packhost.app.main import app


@pytest.fixture
def make_client(demo_tree, tmp_path, monkeypatch):
    """Start the app (lifespan included) against the demo pack tree."""
    clients = []

    def _make(**env) -> TestClient:
        monkeypatch.setenv("PACKHOST_PACK_INDEX_URL", str(demo_tree.index_path))
        monkeypatch.setenv("PACKHOST_PACK_CACHE_DIR", str(tmp_path / "cache"))
        monkeypatch.setenv("PACKHOST_FETCH_MAX_ATTEMPTS", "1")
        for name, value in env.items():
            monkeypatch.setenv(f"PACKHOST_{name.upper()}", value)
        get_settings.cache_clear()

        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)
    get_settings.cache_clear()


def _envelope(text, **extra):
    return {
        "tenant": "demo",
        "provider": "telegram",
        "provider_ids": {"conversation_id": "42", "user_id": "1", **extra.pop("ids", {})},
        "text": text,
        **extra,
    }


class TestHealth:
    def test_unhealthy_before_startup(self):
        set_host(None)
        response = TestClient(app).get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "unhealthy"

    def test_healthy_after_startup(self, make_client):
        client = make_client()
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["tenants"] == ["demo"]
        assert body["watching"] is True

    def test_root(self, make_client):
        assert make_client().get("/").json()["service"] == "packhost"


class TestIngress:
    """POST /api/v1/ingress"""

    def test_greet(self, make_client):
        client = make_client()
        response = client.post(
            "/api/v1/ingress",
            json=_envelope("/start", metadata={"flow_id": "greet"}, ids={"event_id": "upd-1"}),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["verdict"] == "fresh"
        assert body["session_key"] == "demo:telegram:42:1"
        assert body["outcome"]["status"] == "completed"
        assert body["outcome"]["outcome"] == "hi"

    def test_duplicate_delivery(self, make_client):
        client = make_client()
        payload = _envelope("/approve", ids={"event_id": "upd-2"})

        first = client.post("/api/v1/ingress", json=payload).json()
        second = client.post("/api/v1/ingress", json=payload).json()

        assert first["outcome"]["status"] == "suspended"
        assert second["verdict"] == "duplicate"
        assert second["outcome"] is None

    def test_suspend_resume_and_abandon(self, make_client):
        client = make_client()
        client.post("/api/v1/ingress", json=_envelope("/approve"))

        response = client.delete("/api/v1/sessions/demo:telegram:42:1")
        assert response.json() == {"session_key": "demo:telegram:42:1", "removed": True}

        body = client.post("/api/v1/ingress", json=_envelope("yes")).json()
        assert body["outcome"]["flow_id"] == "greet"

    def test_abandon_escaped_key(self, make_client):
        client = make_client()
        payload = {
            **_envelope("/approve"),
            "provider": "teams",
            "provider_ids": {"conversation_id": "19:abc", "user_id": "1"},
        }
        key = client.post("/api/v1/ingress", json=payload).json()["session_key"]
        assert key == "demo:teams:19%3Aabc:1"

        response = client.delete(f"/api/v1/sessions/{quote(key, safe='')}")
        assert response.json() == {"session_key": key, "removed": True}

    def test_invalid_envelope(self, make_client):
        client = make_client()
        response = client.post("/api/v1/ingress", json={"provider": "telegram"})
        assert response.status_code == 422


class TestAdmin:
    """Admin status and reload."""

    def test_status_and_reload_without_token(self, make_client):
        client = make_client()

        status = client.get("/api/v1/admin/status").json()
        assert status["tenants"]["demo"]["pack_id"] == "demo"

        report = client.post("/api/v1/admin/reload", params={"tenant": "demo"}).json()
        assert report["ok"] is True
        assert report["tenants"] == [
            {
                "tenant": "demo",
                "outcome": "unchanged",
                "digests": status["tenants"]["demo"]["digests"],
                "error": None,
            }
        ]

    def test_token_required_when_configured(self, make_client):
        client = make_client(admin_token="s3cret")

        assert client.get("/api/v1/admin/status").status_code == 401
        assert client.get(
            "/api/v1/admin/status", headers={"Authorization": "Bearer wrong"}
        ).status_code == 401
        assert client.post("/api/v1/admin/reload").status_code == 401

        response = client.get("/api/v1/admin/status", headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200

    def test_ingress_is_not_behind_admin_token(self, make_client):
        client = make_client(admin_token="s3cret")
        assert client.post("/api/v1/ingress", json=_envelope("/start")).status_code == 200
