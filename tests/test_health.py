"""
tests/test_health.py -- Integration tests for GET /api/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' while the store answers
  - 'degraded' when the database ping fails
  - No authentication required
"""

from __future__ import annotations


def test_health_returns_200_with_components(client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "1.0.0"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(client):
    """Health endpoint is accessible without any authentication headers."""
    resp = client.get("/api/health", headers={})
    assert resp.status_code == 200


def test_health_reports_degraded_database(client, monkeypatch):
    """A failed ping downgrades the status instead of failing the request."""
    monkeypatch.setattr(client.app.state.user_store, "ping", lambda: False)
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "degraded", "version": "1.0.0", "components": {"database": "unavailable"}}


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"
