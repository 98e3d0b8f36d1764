"""Health-Endpoints (ohne Auth)."""
import pytest

pytestmark = pytest.mark.health


def test_liveness(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["checks"] == {"api": "ok"}
    assert body["uptime_seconds"] >= 0


def test_readiness(client):
    r = client.get("/health/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ready"}


def test_detailed(client):
    r = client.get("/health/detailed")
    assert r.status_code == 200
    body = r.json()
    assert body["checks"]["database"] == "ok"
    assert body["database"]["type"] == "sqlite"
    assert body["database"]["security_log_entries"] >= 0
    assert "memory" in body["resources"]


def test_health_needs_no_identity(fresh_client):
    assert fresh_client.get("/health").status_code == 200
