"""
/api/threat-rules: Liste, Anlegen/Ändern/Löschen, Trockenlauf, Reload, Statistik.

Die gemeinsame App-DB ist mit dem Preset "standard" geseeded. Tests, die
Regeln ändern, stellen den Seed-Zustand am Ende wieder her.
"""
from datetime import datetime, timedelta, timezone

import pytest

pytestmark = pytest.mark.api

ACTIVE_SEED = {"brute-force-detection", "rapid-ip-change-detection", "suspicious-user-agent-detection"}


def _failed_events(n, email="target@example.com"):
    now = datetime.now(timezone.utc)
    return [
        {
            "event_type": "LOGIN_FAILED",
            "timestamp": (now - timedelta(seconds=30 * (i + 1))).isoformat(),
            "email": email,
            "ip_address": "8.8.8.8",
            "success": False,
        }
        for i in range(n)
    ]


class TestListAndGet:

    def test_seeded_rules(self, client, analyst_h):
        r = client.get("/api/threat-rules", headers=analyst_h)
        assert r.status_code == 200
        body = r.json()
        by_id = {rule["id"]: rule for rule in body["rules"]}
        assert {k for k, v in by_id.items() if v["status"] == "ACTIVE"} >= ACTIVE_SEED
        assert "geo-anomaly-detection" not in by_id
        assert {t["id"] for t in body["available_types"]} >= ACTIVE_SEED

    def test_filter_by_status(self, client, analyst_h):
        r = client.get("/api/threat-rules?status=INACTIVE", headers=analyst_h)
        assert all(rule["status"] == "INACTIVE" for rule in r.json()["rules"])

    def test_get_single(self, client, analyst_h):
        r = client.get("/api/threat-rules/brute-force-detection", headers=analyst_h)
        assert r.status_code == 200
        assert r.json()["config"]["threshold"] == 5
        assert client.get("/api/threat-rules/nope", headers=analyst_h).status_code == 404

    def test_viewer_has_no_access(self, client, viewer_h):
        assert client.get("/api/threat-rules", headers=viewer_h).status_code == 403


class TestWrite:

    def test_analyst_cannot_write(self, client, analyst_h):
        r = client.put("/api/threat-rules/brute-force-detection", json={"status": "INACTIVE"}, headers=analyst_h)
        assert r.status_code == 403

    def test_update_status_and_config(self, client, secadmin_h):
        url = "/api/threat-rules/account-enumeration-detection"
        original = client.get(url, headers=secadmin_h).json()
        try:
            r = client.put(url, json={"status": "TESTING", "config": {"min_attempts": 7}}, headers=secadmin_h)
            assert r.status_code == 200
            body = r.json()
            assert body["status"] == "TESTING"
            assert body["config"]["min_attempts"] == 7
            assert body["updated_by"] == "secadmin1"

            stats = client.get(f"{url}/statistics", headers=secadmin_h).json()
            assert stats["registered"] is True
        finally:
            client.put(url, json={"status": original["status"], "config": original["config"]}, headers=secadmin_h)

        stats = client.get(f"{url}/statistics", headers=secadmin_h).json()
        assert stats["registered"] is (original["status"] != "INACTIVE")

    def test_invalid_config_rejected(self, client, secadmin_h):
        r = client.put(
            "/api/threat-rules/brute-force-detection",
            json={"config": {"threshold": -1}},
            headers=secadmin_h,
        )
        assert r.status_code == 400
        current = client.get("/api/threat-rules/brute-force-detection", headers=secadmin_h).json()
        assert current["config"]["threshold"] == 5

    def test_create_duplicate_and_unknown(self, client, secadmin_h):
        r = client.post("/api/threat-rules", json={"id": "brute-force-detection"}, headers=secadmin_h)
        assert r.status_code == 409
        r = client.post("/api/threat-rules", json={"id": "geo-anomaly-detection"}, headers=secadmin_h)
        assert r.status_code == 400

    def test_delete_and_recreate(self, client, secadmin_h):
        url = "/api/threat-rules/time-anomaly-detection"
        original = client.get(url, headers=secadmin_h).json()

        assert client.delete(url, headers=secadmin_h).status_code == 204
        assert client.get(url, headers=secadmin_h).status_code == 404
        assert client.delete(url, headers=secadmin_h).status_code == 404

        r = client.post(
            "/api/threat-rules",
            json={"id": "time-anomaly-detection", "config": original["config"], "tags": original["tags"]},
            headers=secadmin_h,
        )
        assert r.status_code == 201
        assert r.json()["status"] == "INACTIVE"
        assert r.json()["created_by"] == "secadmin1"
        if original["status"] != "INACTIVE":
            client.put(url, json={"status": original["status"]}, headers=secadmin_h)

    def test_reload(self, client, secadmin_h):
        r = client.post("/api/threat-rules/reload", headers=secadmin_h)
        assert r.status_code == 200
        assert r.json()["loaded"] >= len(ACTIVE_SEED)


class TestDryRun:

    def test_brute_force_match(self, client, secadmin_h):
        body = {
            "rule_id": "brute-force-detection",
            "context": {
                "event_type": "LOGIN_FAILED",
                "email": "target@example.com",
                "ip_address": "8.8.8.8",
                "recent_events": _failed_events(4),
            },
        }
        r = client.post("/api/threat-rules/test", json=body, headers=secadmin_h)
        assert r.status_code == 200
        result = r.json()
        assert result["matched"] is True
        assert result["evidence"]["attempt_count"] == 5
        assert "BLOCK_IP" in result["suggested_actions"]

    def test_config_override(self, client, secadmin_h):
        body = {
            "rule_id": "brute-force-detection",
            "config": {"threshold": 10},
            "context": {"event_type": "LOGIN_FAILED", "email": "target@example.com",
                        "recent_events": _failed_events(4)},
        }
        r = client.post("/api/threat-rules/test", json=body, headers=secadmin_h)
        assert r.json()["matched"] is False

    def test_dry_run_has_no_side_effects(self, client, secadmin_h):
        before = client.get("/api/threat-rules/metrics/engine", headers=secadmin_h).json()
        client.post(
            "/api/threat-rules/test",
            json={"rule_id": "brute-force-detection", "context": {"recent_events": _failed_events(6)}},
            headers=secadmin_h,
        )
        after = client.get("/api/threat-rules/metrics/engine", headers=secadmin_h).json()
        assert after["total_executions"] == before["total_executions"]

    def test_unknown_rule_type(self, client, secadmin_h):
        r = client.post("/api/threat-rules/test", json={"rule_id": "nope", "context": {}}, headers=secadmin_h)
        assert r.status_code == 404


class TestStatistics:

    def test_overview(self, client, analyst_h):
        r = client.get("/api/threat-rules/statistics/overview", headers=analyst_h)
        assert r.status_code == 200
        body = r.json()
        assert body["total_rules"] >= 5
        assert body["rules_by_status"]["active"] >= len(ACTIVE_SEED)
        assert "engine_metrics" in body

    def test_rule_statistics(self, client, analyst_h):
        r = client.get("/api/threat-rules/brute-force-detection/statistics", headers=analyst_h)
        assert r.status_code == 200
        body = r.json()
        assert body["registered"] is True
        assert set(body["stats"]) >= {"executions", "matches"}

    def test_unknown_rule_statistics(self, client, analyst_h):
        assert client.get("/api/threat-rules/nope/statistics", headers=analyst_h).status_code == 404
