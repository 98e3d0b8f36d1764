"""
Security-Header und Request-ID.

Prueft:
  - restriktive CSP auf JSON-Antworten, keine CSP fuer /docs
  - X-Frame-Options, X-Content-Type-Options, Referrer- und Permissions-Policy
  - Cache-Control no-store auf /api/ (Security-Log darf nicht im Cache landen)
  - X-Request-Id wird uebernommen oder erzeugt
"""
import pytest

pytestmark = pytest.mark.security


class TestSecurityHeaders:

    def test_csp_on_api(self, client, viewer_h):
        r = client.get("/api/alerts", headers=viewer_h)
        csp = r.headers.get("content-security-policy", "")
        assert "default-src 'none'" in csp
        assert "frame-ancestors 'none'" in csp

    def test_no_csp_on_docs(self, client):
        r = client.get("/docs")
        assert r.status_code == 200
        assert "content-security-policy" not in r.headers

    def test_common_headers(self, client):
        r = client.get("/health")
        assert r.headers.get("x-frame-options") == "DENY"
        assert r.headers.get("x-content-type-options") == "nosniff"
        assert r.headers.get("referrer-policy") == "no-referrer"
        pp = r.headers.get("permissions-policy", "")
        assert "camera=()" in pp
        assert "geolocation=()" in pp

    def test_api_not_cached(self, client, viewer_h):
        r = client.get("/api/security/logs", headers=viewer_h)
        assert "no-store" in r.headers.get("cache-control", "")

    def test_health_cacheable(self, client):
        r = client.get("/health")
        assert "no-store" not in r.headers.get("cache-control", "")

    def test_no_hsts_without_secure_cookies(self, client):
        r = client.get("/health")
        assert "strict-transport-security" not in r.headers

    def test_headers_on_errors(self, client, viewer_h):
        r = client.post("/api/threat-rules/reload", headers=viewer_h)
        assert r.status_code == 403
        assert r.headers.get("x-frame-options") == "DENY"


class TestRequestId:

    def test_generated(self, client):
        r = client.get("/health")
        rid = r.headers.get("x-request-id")
        assert rid and len(rid) == 32

    def test_echoed(self, client):
        r = client.get("/health", headers={"X-Request-Id": "trace-abc.123"})
        assert r.headers.get("x-request-id") == "trace-abc.123"

    def test_invalid_replaced(self, client):
        r = client.get("/health", headers={"X-Request-Id": "bad id with spaces"})
        rid = r.headers.get("x-request-id")
        assert rid != "bad id with spaces"
        assert len(rid) == 32
