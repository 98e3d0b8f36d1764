"""
Alert-Korrelation: verwandte Alerts, Score, Muster, Eskalation, Gruppen.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from app import config
from app.alert_correlation import (
    analyze_correlation_group,
    calculate_correlation_score,
    calculate_group_risk_score,
    check_escalation,
    correlate_alert,
    detect_patterns,
    find_related_alerts,
    generate_recommendations,
    get_correlation_group,
    merge_correlation_groups,
)
from app.timeutil import to_iso, utc_now

pytestmark = pytest.mark.alerts


def _ago(minutes: float) -> str:
    return to_iso(utc_now() - timedelta(minutes=minutes))


class TestRelatedAlerts:

    def test_matches_on_user_or_ip(self, make_alert, db):
        a = make_alert(user_id="u1", ip_address="1.1.1.1")
        same_user = make_alert(user_id="u1", ip_address="2.2.2.2")
        same_ip = make_alert(user_id="u9", ip_address="1.1.1.1")
        make_alert(user_id="u2", ip_address="3.3.3.3")
        ids = {r.id for r in find_related_alerts(db, a)}
        assert ids == {same_user.id, same_ip.id}

    def test_closed_and_old_alerts_excluded(self, make_alert, db):
        a = make_alert(user_id="u1")
        make_alert(user_id="u1", status="RESOLVED")
        make_alert(user_id="u1", status="SUPPRESSED")
        make_alert(user_id="u1", created_at=_ago(120))
        assert find_related_alerts(db, a) == []

    def test_no_identifiers_no_relations(self, make_alert, db):
        a = make_alert()
        make_alert()
        assert find_related_alerts(db, a) == []


class TestScoreAndPatterns:

    def test_identical_alerts_score_capped(self, make_alert):
        kw = dict(user_id="u1", ip_address="1.1.1.1", rule_id="r1", severity="HIGH")
        a = make_alert(**kw)
        b = make_alert(**kw)
        assert calculate_correlation_score(a, [b]) == 100

    def test_no_related_score_zero(self, make_alert):
        assert calculate_correlation_score(make_alert(), []) == 0

    def test_weak_relation(self, make_alert):
        a = make_alert(ip_address="1.1.1.1", severity="LOW", type="ANOMALY_DETECTED")
        b = make_alert(ip_address="1.1.1.1", severity="HIGH", type="POLICY_VIOLATION",
                       created_at=_ago(30))
        # ip 25 + halbe Zeitnähe (~12.5)
        assert 36 <= calculate_correlation_score(a, [b]) <= 38

    def test_brute_force_pattern(self, make_alert):
        alerts = [make_alert(type="MULTIPLE_FAILED_ATTEMPTS", user_id="u1") for _ in range(3)]
        assert "brute_force_attack" in detect_patterns(alerts[0], alerts[1:])

    def test_distributed_attack(self, make_alert):
        alerts = [make_alert(user_id="u1", ip_address=f"10.0.0.{i}") for i in range(3)]
        assert "distributed_attack" in detect_patterns(alerts[0], alerts[1:])

    def test_account_takeover(self, make_alert):
        alerts = [
            make_alert(type="SUSPICIOUS_LOGIN", user_id="u1"),
            make_alert(type="ANOMALY_DETECTED", user_id="u1"),
            make_alert(type="BRUTE_FORCE_ATTEMPT", user_id="u1"),
            make_alert(type="MULTIPLE_FAILED_ATTEMPTS", user_id="u1"),
        ]
        assert "account_takeover_attempt" in detect_patterns(alerts[0], alerts[1:])

    def test_credential_stuffing(self, make_alert):
        alerts = [make_alert(ip_address="6.6.6.6", user_id=f"u{i}") for i in range(5)]
        patterns = detect_patterns(alerts[0], alerts[1:])
        assert "credential_stuffing" in patterns
        assert "rapid_fire_attack" in patterns

    def test_repeated_policy_violations(self, make_alert):
        alerts = [
            make_alert(type="POLICY_VIOLATION", user_id="u1", created_at=_ago(10 * i))
            for i in range(3)
        ]
        patterns = detect_patterns(alerts[0], alerts[1:])
        assert "repeated_policy_violations" in patterns
        assert "brute_force_attack" not in patterns

    def test_two_policy_violations_are_not_a_pattern(self, make_alert):
        a = make_alert(type="POLICY_VIOLATION", user_id="u1")
        b = make_alert(type="POLICY_VIOLATION", user_id="u1")
        c = make_alert(type="ANOMALY_DETECTED", user_id="u1")
        assert "repeated_policy_violations" not in detect_patterns(a, [b, c])


class TestEscalation:

    def test_two_critical(self, make_alert):
        a = make_alert(severity="CRITICAL")
        b = make_alert(severity="CRITICAL")
        assert check_escalation(a, [b]) == (True, "2 critical alerts in correlation group")

    def test_three_high(self, make_alert):
        alerts = [make_alert(severity="HIGH") for _ in range(3)]
        escalate, reason = check_escalation(alerts[0], alerts[1:])
        assert escalate
        assert "high severity" in reason

    def test_total_count(self, make_alert):
        alerts = [make_alert(severity="LOW") for _ in range(5)]
        escalate, reason = check_escalation(alerts[0], alerts[1:], patterns=[])
        assert escalate
        assert reason == "5 total alerts in correlation group"

    def test_dangerous_pattern(self, make_alert):
        a = make_alert()
        escalate, reason = check_escalation(a, [], patterns=["distributed_attack"])
        assert escalate
        assert "distributed_attack" in reason

    def test_below_thresholds(self, make_alert):
        a = make_alert(severity="HIGH")
        b = make_alert(severity="MEDIUM")
        assert check_escalation(a, [b], patterns=["brute_force_attack"]) == (False, None)

    def test_disabled(self, make_alert, monkeypatch):
        monkeypatch.setattr(config, "ALERT_AUTO_ESCALATE", False)
        a = make_alert(severity="CRITICAL")
        b = make_alert(severity="CRITICAL")
        assert check_escalation(a, [b]) == (False, None)


class TestCorrelateAndGroups:

    def test_isolated_alert_gets_fresh_id(self, make_alert, db):
        a = make_alert(user_id="lonely")
        res = correlate_alert(db, a)
        assert res.correlation_id
        assert res.related_alert_ids == []
        assert a.is_correlated is False

    def test_group_is_persisted_and_reused(self, make_alert, db):
        first = make_alert(user_id="u1")
        second = make_alert(user_id="u1")
        res1 = correlate_alert(db, second)
        assert res1.related_alert_ids == [first.id]
        assert first.correlation_id == second.correlation_id == res1.correlation_id
        assert second.correlated_alerts == [first.id]

        third = make_alert(user_id="u1")
        res2 = correlate_alert(db, third)
        assert res2.correlation_id == res1.correlation_id
        assert len(get_correlation_group(db, res1.correlation_id)) == 3

    def test_group_risk_score(self, make_alert):
        alerts = [make_alert(severity="CRITICAL"), make_alert(severity="CRITICAL")]
        # 2 x 25 + 20 (gleichzeitig)
        assert calculate_group_risk_score(alerts, []) == 70
        assert calculate_group_risk_score([], ["brute_force_attack"]) == 0

    def test_recommendations(self):
        recs = generate_recommendations(
            {"severity_breakdown": {"CRITICAL": 2}, "affected_users": []},
            ["brute_force_attack"], 85,
        )
        assert recs[0].startswith("IMMEDIATE ACTION REQUIRED")
        assert "Consider implementing account lockout policies" in recs
        assert "Escalate to security team immediately" in recs
        assert len(recs) == len(set(recs))

    def test_analyze_group(self, make_alert, db):
        make_alert(user_id="u1", ip_address="1.1.1.1", severity="HIGH", correlation_id="grp-1")
        make_alert(user_id="u2", ip_address="1.1.1.1", severity="LOW", correlation_id="grp-1")
        out = analyze_correlation_group(db, "grp-1")
        assert out["summary"]["total_alerts"] == 2
        assert out["summary"]["affected_users"] == ["u1", "u2"]
        assert out["summary"]["severity_breakdown"] == {"HIGH": 1, "LOW": 1}
        assert out["risk_score"] == 38

    def test_analyze_unknown_group(self, db):
        with pytest.raises(ValueError):
            analyze_correlation_group(db, "gibt-es-nicht")

    def test_merge(self, make_alert, db):
        make_alert(correlation_id="g1")
        make_alert(correlation_id="g1")
        make_alert(correlation_id="g2")
        out = merge_correlation_groups(db, ["g1", "g2"])
        assert out["affected_alerts"] == 3
        group = get_correlation_group(db, out["new_correlation_id"])
        assert len(group) == 3
        assert all(len(a.correlated_alerts) == 2 for a in group)

    def test_merge_requires_two_ids(self, db):
        with pytest.raises(ValueError):
            merge_correlation_groups(db, ["g1", "g1"])
