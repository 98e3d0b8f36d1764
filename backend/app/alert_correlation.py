"""
Korrelation von Security-Alerts.

Ein neuer Alert wird mit offenen Alerts desselben Users, derselben IP,
derselben Session, derselben E-Mail oder derselben Regel innerhalb des
Korrelationsfensters verglichen. Verwandte Alerts teilen sich eine
correlation_id (Korrelationsgruppe).

Liefert:
  - Korrelations-Score (0-100)
  - erkannte Angriffsmuster
  - Eskalationsempfehlung (Schwellen aus config)
"""
from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app import config
from app.enums import AlertStatus, AlertType, ThreatSeverity
from app.logging_config import get_logger
from app.models import SecurityAlert
from app.timeutil import parse_iso, to_iso, utc_now

logger = get_logger(__name__)

RELATED_ALERT_LIMIT = 50
RAPID_FIRE_WINDOW_MS = 5 * 60 * 1000

_WEIGHTS = {
    "same_user": 30,
    "same_ip": 25,
    "same_session": 40,
    "same_rule": 20,
    "same_severity": 15,
    "time_proximity": 25,
    "same_type": 15,
}

DANGEROUS_PATTERNS = ("account_takeover_attempt", "distributed_attack", "credential_stuffing")

_SEVERITY_RISK = {
    ThreatSeverity.CRITICAL.value: 25,
    ThreatSeverity.HIGH.value: 15,
    ThreatSeverity.MEDIUM.value: 8,
    ThreatSeverity.LOW.value: 3,
}

_PATTERN_RISK = {
    "account_takeover_attempt": 30,
    "distributed_attack": 25,
    "credential_stuffing": 25,
    "brute_force_attack": 20,
    "rapid_fire_attack": 15,
    "repeated_policy_violations": 10,
}


@dataclass
class CorrelationResult:
    correlation_id: str
    score: int = 0
    patterns: list[str] = field(default_factory=list)
    related_alert_ids: list[str] = field(default_factory=list)
    should_escalate: bool = False
    escalation_reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "correlation_id": self.correlation_id,
            "score": self.score,
            "patterns": list(self.patterns),
            "related_alert_ids": list(self.related_alert_ids),
            "should_escalate": self.should_escalate,
            "escalation_reason": self.escalation_reason,
        }


def _created_ms(alert: SecurityAlert) -> float:
    dt = parse_iso(alert.created_at)
    return dt.timestamp() * 1000 if dt else 0.0


def find_related_alerts(db: Session, alert: SecurityAlert, window_ms: Optional[int] = None) -> list[SecurityAlert]:
    window = window_ms or config.ALERT_CORRELATION_WINDOW_MS
    conditions = []
    if alert.user_id:
        conditions.append(SecurityAlert.user_id == alert.user_id)
    if alert.ip_address:
        conditions.append(SecurityAlert.ip_address == alert.ip_address)
    if alert.session_id:
        conditions.append(SecurityAlert.session_id == alert.session_id)
    if alert.user_email:
        conditions.append(SecurityAlert.user_email == alert.user_email)
    if alert.rule_id:
        conditions.append(SecurityAlert.rule_id == alert.rule_id)
    if not conditions:
        return []

    cutoff = to_iso(utc_now() - timedelta(milliseconds=window))
    return (
        db.query(SecurityAlert)
        .filter(or_(*conditions))
        .filter(SecurityAlert.id != alert.id)
        .filter(SecurityAlert.created_at >= cutoff)
        .filter(SecurityAlert.status.notin_([AlertStatus.RESOLVED.value, AlertStatus.SUPPRESSED.value]))
        .order_by(SecurityAlert.created_at.desc())
        .limit(RELATED_ALERT_LIMIT)
        .all()
    )


def calculate_correlation_score(
    alert: SecurityAlert,
    related: list[SecurityAlert],
    window_ms: Optional[int] = None,
) -> int:
    """Gemittelte Ähnlichkeit zu den verwandten Alerts, gedeckelt auf 100."""
    if not related:
        return 0
    window = window_ms or config.ALERT_CORRELATION_WINDOW_MS
    created = _created_ms(alert)
    total = 0.0
    for other in related:
        s = 0.0
        if alert.user_id and alert.user_id == other.user_id:
            s += _WEIGHTS["same_user"]
        if alert.ip_address and alert.ip_address == other.ip_address:
            s += _WEIGHTS["same_ip"]
        if alert.session_id and alert.session_id == other.session_id:
            s += _WEIGHTS["same_session"]
        if alert.rule_id and alert.rule_id == other.rule_id:
            s += _WEIGHTS["same_rule"]
        if alert.severity == other.severity:
            s += _WEIGHTS["same_severity"]
        if alert.type == other.type:
            s += _WEIGHTS["same_type"]
        diff = abs(created - _created_ms(other))
        s += max(0.0, _WEIGHTS["time_proximity"] * (1 - diff / window))
        total += s / len(related)
    return min(100, round(total))


def detect_patterns(alert: SecurityAlert, related: list[SecurityAlert]) -> list[str]:
    patterns: list[str] = []
    alerts = [alert, *related]

    failed = sum(
        1 for a in alerts
        if a.type in (AlertType.MULTIPLE_FAILED_ATTEMPTS.value, AlertType.BRUTE_FORCE_ATTEMPT.value)
    )
    if failed >= 3:
        patterns.append("brute_force_attack")

    if alert.user_id:
        ips = {a.ip_address for a in alerts if a.user_id == alert.user_id and a.ip_address}
        if len(ips) >= 3:
            patterns.append("distributed_attack")

    created = _created_ms(alert)
    recent = [a for a in alerts if abs(_created_ms(a) - created) < RAPID_FIRE_WINDOW_MS]
    if len(recent) >= 5:
        patterns.append("rapid_fire_attack")

    suspicious = sum(
        1 for a in alerts
        if a.type in (AlertType.SUSPICIOUS_LOGIN.value, AlertType.ANOMALY_DETECTED.value)
    )
    if suspicious >= 2 and failed >= 2:
        patterns.append("account_takeover_attempt")

    if alert.ip_address:
        users = {a.user_id for a in alerts if a.ip_address == alert.ip_address and a.user_id}
        if len(users) >= 5:
            patterns.append("credential_stuffing")

    if sum(1 for a in alerts if a.type == AlertType.POLICY_VIOLATION.value) >= 3:
        patterns.append("repeated_policy_violations")

    return patterns


def check_escalation(
    alert: SecurityAlert,
    related: list[SecurityAlert],
    patterns: Optional[list[str]] = None,
) -> tuple[bool, Optional[str]]:
    """(should_escalate, reason). Reihenfolge: CRITICAL, HIGH, Gesamtzahl, Muster."""
    if not config.ALERT_AUTO_ESCALATE:
        return False, None

    alerts = [alert, *related]
    critical = sum(1 for a in alerts if a.severity == ThreatSeverity.CRITICAL.value)
    high = sum(1 for a in alerts if a.severity == ThreatSeverity.HIGH.value)

    if critical >= config.ALERT_ESCALATION_CRITICAL:
        return True, f"{critical} critical alerts in correlation group"
    if high >= config.ALERT_ESCALATION_HIGH:
        return True, f"{high} high severity alerts in correlation group"
    if len(alerts) >= config.ALERT_ESCALATION_TOTAL:
        return True, f"{len(alerts)} total alerts in correlation group"

    if patterns is None:
        patterns = detect_patterns(alert, related)
    if any(p in DANGEROUS_PATTERNS for p in patterns):
        return True, f"Dangerous pattern detected: {', '.join(patterns)}"
    return False, None


def _persist_group(db: Session, alert: SecurityAlert, related: list[SecurityAlert], correlation_id: str) -> None:
    members = [alert, *related]
    ids = [a.id for a in members]
    for a in members:
        a.correlation_id = correlation_id
        a.is_correlated = True
        a.correlated_alerts = [i for i in ids if i != a.id]
    db.commit()


def correlate_alert(db: Session, alert: SecurityAlert) -> CorrelationResult:
    """Korreliert einen frisch gespeicherten Alert mit offenen Alerts."""
    related = find_related_alerts(db, alert)
    if not related:
        return CorrelationResult(correlation_id=str(uuid.uuid4()))

    existing = next((a.correlation_id for a in related if a.correlation_id), None)
    correlation_id = existing or str(uuid.uuid4())

    score = calculate_correlation_score(alert, related)
    patterns = detect_patterns(alert, related)
    should_escalate, reason = check_escalation(alert, related, patterns)

    _persist_group(db, alert, related, correlation_id)
    logger.debug(
        "alert_correlated",
        alert_id=alert.id,
        correlation_id=correlation_id,
        related=len(related),
        score=score,
    )
    return CorrelationResult(
        correlation_id=correlation_id,
        score=score,
        patterns=patterns,
        related_alert_ids=[a.id for a in related],
        should_escalate=should_escalate,
        escalation_reason=reason,
    )


# ─────────────────────────────────────────────────────────────────────
# Gruppen-Analyse
# ─────────────────────────────────────────────────────────────────────

def get_correlation_group(db: Session, correlation_id: str) -> list[SecurityAlert]:
    return (
        db.query(SecurityAlert)
        .filter(SecurityAlert.correlation_id == correlation_id)
        .order_by(SecurityAlert.created_at.desc())
        .all()
    )


def calculate_group_risk_score(alerts: list[SecurityAlert], patterns: list[str]) -> int:
    if not alerts:
        return 0
    score = float(sum(_SEVERITY_RISK.get(a.severity, 0) for a in alerts))
    score += sum(_PATTERN_RISK.get(p, 5) for p in patterns)
    times = [_created_ms(a) for a in alerts]
    span_minutes = (max(times) - min(times)) / 60_000
    score += max(0.0, 20 - span_minutes)
    return min(100, round(score))


def generate_recommendations(summary: dict, patterns: list[str], risk_score: int) -> list[str]:
    recs: list[str] = []
    if risk_score >= 80:
        recs += [
            "IMMEDIATE ACTION REQUIRED: Initiate incident response procedure",
            "Block affected IP addresses temporarily",
            "Force password reset for affected users",
        ]
    if "account_takeover_attempt" in patterns:
        recs += [
            "Enable multi-factor authentication for affected accounts",
            "Review recent account activity for unauthorized access",
        ]
    if "distributed_attack" in patterns:
        recs += [
            "Implement geographic-based access restrictions",
            "Consider implementing CAPTCHA for login attempts",
        ]
    if "credential_stuffing" in patterns:
        recs += [
            "Implement rate limiting per IP address",
            "Check user credentials against known breach databases",
        ]
    if "brute_force_attack" in patterns:
        recs += [
            "Implement progressive delays for failed login attempts",
            "Consider implementing account lockout policies",
        ]
    if summary.get("severity_breakdown", {}).get(ThreatSeverity.CRITICAL.value, 0) >= 2:
        recs += [
            "Escalate to security team immediately",
            "Preserve all logs for forensic analysis",
        ]
    if len(summary.get("affected_users", [])) > 10:
        recs += [
            "Consider system-wide security announcement",
            "Review and update security policies",
        ]
    return list(dict.fromkeys(recs))


def analyze_correlation_group(db: Session, correlation_id: str) -> dict:
    """Zusammenfassung, Muster, Risiko und Empfehlungen einer Gruppe.

    Raises:
        ValueError: keine Alerts mit dieser correlation_id
    """
    alerts = get_correlation_group(db, correlation_id)
    if not alerts:
        raise ValueError(f"No alerts found for correlation ID: {correlation_id}")

    created = sorted(a.created_at for a in alerts)
    summary = {
        "total_alerts": len(alerts),
        "time_span": {"start": created[0], "end": created[-1]},
        "severity_breakdown": dict(Counter(a.severity for a in alerts)),
        "type_breakdown": dict(Counter(a.type for a in alerts)),
        "affected_users": sorted({a.user_id for a in alerts if a.user_id}),
        "affected_ips": sorted({a.ip_address for a in alerts if a.ip_address}),
    }
    patterns = detect_patterns(alerts[0], alerts[1:])
    risk = calculate_group_risk_score(alerts, patterns)
    return {
        "correlation_id": correlation_id,
        "summary": summary,
        "patterns": patterns,
        "risk_score": risk,
        "recommendations": generate_recommendations(summary, patterns, risk),
    }


def merge_correlation_groups(db: Session, correlation_ids: list[str]) -> dict:
    """Mehrere Gruppen unter einer neuen correlation_id zusammenführen.

    Raises:
        ValueError: weniger als zwei IDs
    """
    ids = list(dict.fromkeys(correlation_ids or []))
    if len(ids) < 2:
        raise ValueError("At least 2 correlation IDs required for merge")

    new_id = str(uuid.uuid4())
    alerts = db.query(SecurityAlert).filter(SecurityAlert.correlation_id.in_(ids)).all()
    member_ids = [a.id for a in alerts]
    for a in alerts:
        a.correlation_id = new_id
        a.is_correlated = True
        a.correlated_alerts = [i for i in member_ids if i != a.id]
    db.commit()
    logger.info(f"Korrelationsgruppen zusammengeführt: {ids} -> {new_id} ({len(alerts)} Alerts)")
    return {"new_correlation_id": new_id, "affected_alerts": len(alerts)}
