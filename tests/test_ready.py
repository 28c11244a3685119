"""
Tests for /health and /ready endpoints.
"""
from __future__ import annotations

from unittest.mock import patch


def test_health_ok(app_client):
    _app, client = app_client
    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["data"]["status"] == "ok"
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Request-ID"]


def test_ready_ok(app_client):
    """Test /ready returns ok when all services are healthy."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=True):
        res = client.get("/ready")
        assert res.status_code == 200

        data = res.get_json()["data"]
        assert data["status"] == "ok"
        assert data["checks"] == {"db": "ok", "redis": "ok"}


def test_ready_redis_down(app_client):
    """Test /ready reports degraded when the notification broker is unreachable."""
    _app, client = app_client

    with patch("app.routes.core._ping_redis", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503
        data = res.get_json()["data"]
        assert data["status"] == "degraded"
        assert data["checks"]["redis"] == "error"


def test_unknown_endpoint_uses_error_envelope(app_client):
    _app, client = app_client
    res = client.get("/api/does-not-exist")
    assert res.status_code == 404
    body = res.get_json()
    assert body["success"] is False
    assert body["error"]["code"] == "NOT_FOUND"
