"""
Rule Engine Unit Tests.

Testet Registry und Evaluation direkt (ohne HTTP), um sicherzustellen dass:
  - Treffer aktiver Regeln in der Hash-Kette landen (inkl. Aktionen)
  - TESTING-Regeln nur trocken laufen
  - Seeding aus threat_rules.yaml dem Preset folgt
  - Ausführungsstatistiken mitgezählt werden
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.models import ThreatRule as ThreatRuleRecord
from app.rule_engine import RuleEngine, get_preset_rule_ids, load_rules_yaml, seed_threat_rules
from app.security_log import get_security_logs, verify_log_chain_integrity
from app.threat_rules import InvalidRuleConfig, RecentEvent, RuleContext, create_rule

pytestmark = pytest.mark.rules

NOW = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)


def _brute_force_ctx() -> RuleContext:
    return RuleContext(
        event_type="LOGIN_FAILED",
        timestamp=NOW,
        user_id="u1",
        email="alice@example.com",
        ip_address="203.0.113.10",
        user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/120.0",
        recent_events=[
            RecentEvent(event_type="LOGIN_FAILED", timestamp=NOW - timedelta(seconds=30 * i),
                        user_id="u1", ip_address="203.0.113.10")
            for i in range(1, 5)
        ],
    )


class TestRegistry:

    def test_register_and_unregister(self):
        eng = RuleEngine()
        eng.register_rule(create_rule("brute-force-detection"))
        assert eng.get_rule("brute-force-detection") is not None
        assert len(eng.get_rules()) == 1
        assert eng.unregister_rule("brute-force-detection") is True
        assert eng.unregister_rule("brute-force-detection") is False

    def test_register_invalid_rule_rejected(self):
        eng = RuleEngine()
        rule = create_rule("brute-force-detection")
        rule.config["threshold"] = -1
        with pytest.raises(InvalidRuleConfig):
            eng.register_rule(rule)

    def test_reload_loads_active_and_testing(self, db):
        seed_threat_rules(db, "standard")
        rec = db.get(ThreatRuleRecord, "time-anomaly-detection")
        rec.status = "TESTING"
        db.commit()

        eng = RuleEngine()
        loaded = eng.reload(db)
        ids = {r.rule_id for r in eng.get_rules()}
        assert loaded == len(ids)
        assert "time-anomaly-detection" in ids
        assert "account-enumeration-detection" not in ids

    def test_reload_skips_broken_config(self, db):
        seed_threat_rules(db, "standard")
        rec = db.get(ThreatRuleRecord, "brute-force-detection")
        rec.config = {"threshold": "viele"}
        db.commit()
        eng = RuleEngine()
        eng.reload(db)
        assert eng.get_rule("brute-force-detection") is None


class TestSeeding:

    def test_yaml_presets(self):
        data = load_rules_yaml()
        assert "standard" in data["presets"]
        standard = get_preset_rule_ids("standard", data)
        assert "brute-force-detection" in standard

    def test_unknown_preset_falls_back_to_standard(self):
        assert get_preset_rule_ids("gibt-es-nicht") == get_preset_rule_ids("standard")

    def test_seed_is_idempotent(self, db):
        first = seed_threat_rules(db, "standard")
        assert first == 5
        assert seed_threat_rules(db, "standard") == 0
        # Regeln ohne Implementierung werden nie geseedet
        assert db.get(ThreatRuleRecord, "geo-anomaly-detection") is None

    def test_seed_follows_preset(self, db):
        seed_threat_rules(db, "standard")
        active = {r.rule_id for r in db.query(ThreatRuleRecord).filter_by(status="ACTIVE")}
        assert active == {r for r in get_preset_rule_ids("standard") if r != "geo-anomaly-detection"}


class TestEvaluation:

    def test_active_match_is_logged_with_actions(self, db):
        eng = RuleEngine()
        eng.register_rule(create_rule("brute-force-detection"))
        results = eng.evaluate(db, _brute_force_ctx())

        assert len(results) == 1
        logs = get_security_logs(db)
        types = [e.event_type for e in logs]
        assert types.count("SUSPICIOUS_ACTIVITY") == 1
        assert types.count("THREAT_ACTION") == 1
        detection = next(e for e in logs if e.event_type == "SUSPICIOUS_ACTIVITY")
        assert detection.meta["threat_detection"]["rule_id"] == "brute-force-detection"
        action = next(e for e in logs if e.event_type == "THREAT_ACTION")
        assert action.meta["action"] == "BLOCK_IP"
        assert verify_log_chain_integrity(db)["is_valid"]

    def test_testing_rule_is_dry_run(self, db):
        eng = RuleEngine()
        eng.register_rule(create_rule("brute-force-detection", status="TESTING"))
        assert eng.evaluate(db, _brute_force_ctx()) == []
        assert get_security_logs(db) == []
        # Statistik zählt trotzdem
        assert eng.get_rule_stats("brute-force-detection")["matches"] == 1

    def test_inactive_rule_not_evaluated(self, db):
        eng = RuleEngine()
        eng.register_rule(create_rule("brute-force-detection", status="INACTIVE"))
        assert eng.evaluate(db, _brute_force_ctx()) == []
        assert eng.get_rule_stats("brute-force-detection") is None

    def test_failing_rule_does_not_stop_others(self, db, monkeypatch):
        eng = RuleEngine()
        broken = create_rule("time-anomaly-detection")
        monkeypatch.setattr(broken, "evaluate", lambda ctx: 1 / 0)
        eng.register_rule(broken)
        eng.register_rule(create_rule("brute-force-detection"))
        assert len(eng.evaluate(db, _brute_force_ctx())) == 1

    def test_test_rule_has_no_side_effects(self, db):
        eng = RuleEngine()
        rule = create_rule("brute-force-detection")
        out = eng.test_rule(rule, _brute_force_ctx())
        assert out["matched"] is True
        assert out["suggested_actions"] == ["BLOCK_IP"]
        assert get_security_logs(db) == []
        assert eng.get_rule_stats(rule.rule_id) is None

    def test_metrics(self, db):
        eng = RuleEngine()
        eng.register_rule(create_rule("brute-force-detection"))
        eng.register_rule(create_rule("time-anomaly-detection"))
        eng.evaluate(db, _brute_force_ctx())
        m = eng.get_metrics()
        assert m["total_rules"] == 2
        assert m["active_rules"] == 2
        assert m["total_executions"] == 2
        assert m["total_matches"] == 1
        assert m["match_rate"] == pytest.approx(50.0)
