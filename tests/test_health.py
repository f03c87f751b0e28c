"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - "degraded" when the database does not answer
  - No authentication required
  - API docs sit behind the request gate
"""

from __future__ import annotations

from core.config import Settings


def test_health_returns_200_with_components(api):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"]
    assert data["components"] == {"app": "ok", "database": "ok"}


def test_health_reports_degraded_database(api, monkeypatch):
    monkeypatch.setattr(api.state.db, "ping", lambda: False)
    data = api.client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"


def test_health_no_auth_required(api):
    resp = api.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_docs_require_authentication(api):
    assert api.client.get("/docs").status_code == 401
    assert api.client.get("/docs", headers=api.admin_headers()).status_code == 200


def test_unknown_host_rejected(api):
    resp = api.client.get("/api/v1/health", headers={"host": "evil.example.com"})
    assert resp.status_code == 400


def test_default_allowed_hosts_exclude_test_client_host():
    assert "testserver" not in Settings.model_fields["allowed_hosts"].default
