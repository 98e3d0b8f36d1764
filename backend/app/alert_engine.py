"""
Alert-Pipeline.

Regel-Treffer -> Alert-Entwurf -> Deduplizierung -> Persistenz
-> Korrelation -> ggf. Eskalation -> ggf. Zustellung.

Zusätzlich:
  - Alerts aus Services (Sperre, verdächtiger Login, IP-Rate-Limit,
    wiederholte Fehlversuche) über `send_*`-Helfer
  - manuelle Alerts über die API
  - Lebenszyklus: quittieren, lösen, unterdrücken
  - Statistik und Verarbeitungsmetriken

Lebenszyklus:
  PENDING -> PROCESSING -> DISPATCHED|FAILED -> ACKNOWLEDGED -> RESOLVED
  SUPPRESSED ist aus jedem offenen Status erreichbar.
  RESOLVED ist final.
"""
from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app import config
from app.alert_correlation import correlate_alert
from app.alert_dedup import AlertDeduplicator, dedup as default_dedup, generate_fingerprint
from app.alert_dispatch import AlertDispatcher, dispatcher as default_dispatcher
from app.enums import (
    AlertStatus,
    AlertType,
    LogSeverity,
    SecurityEventType,
    ThreatSeverity,
    increase_severity,
)
from app.logging_config import audit_log, get_logger, security_log
from app.models import SecurityAlert
from app.security_log import log_security_event
from app.threat_rules import RuleContext, RuleResult
from app.timeutil import parse_iso, to_iso, utc_now, utc_now_iso

logger = get_logger(__name__)

DEFAULT_SUPPRESSION_HOURS = 24
_OPEN_STATUSES = (
    AlertStatus.PENDING.value,
    AlertStatus.PROCESSING.value,
    AlertStatus.DISPATCHED.value,
    AlertStatus.FAILED.value,
    AlertStatus.ACKNOWLEDGED.value,
)


def alert_to_dict(a: SecurityAlert) -> dict:
    return {
        "id": a.id,
        "type": a.type,
        "severity": a.severity,
        "title": a.title,
        "description": a.description,
        "status": a.status,
        "fingerprint": a.fingerprint,
        "rule_id": a.rule_id,
        "rule_name": a.rule_name,
        "event_type": a.event_type,
        "user_id": a.user_id,
        "user_email": a.user_email,
        "session_id": a.session_id,
        "ip_address": a.ip_address,
        "user_agent": a.user_agent,
        "location": a.location,
        "score": a.score,
        "evidence": a.evidence or {},
        "context": a.context or {},
        "tags": a.tags or [],
        "correlation_id": a.correlation_id,
        "correlated_alerts": a.correlated_alerts or [],
        "is_correlated": bool(a.is_correlated),
        "occurrence_count": a.occurrence_count,
        "first_seen": a.first_seen,
        "last_seen": a.last_seen,
        "dispatch_attempts": a.dispatch_attempts,
        "last_dispatch_at": a.last_dispatch_at,
        "dispatched_at": a.dispatched_at,
        "dispatched_channels": a.dispatched_channels or [],
        "dispatch_error": a.dispatch_error,
        "acknowledged_by": a.acknowledged_by,
        "acknowledged_at": a.acknowledged_at,
        "resolved_by": a.resolved_by,
        "resolved_at": a.resolved_at,
        "resolution_notes": a.resolution_notes,
        "suppressed_until": a.suppressed_until,
        "suppression_reason": a.suppression_reason,
        "created_at": a.created_at,
        "updated_at": a.updated_at,
    }


# ─────────────────────────────────────────────────────────────────────
# Entwürfe aus Regel-Treffern
# ─────────────────────────────────────────────────────────────────────

def map_alert_type(event_type: Optional[str], result: RuleResult) -> str:
    tags = result.tags or []
    if "brute-force" in tags:
        return AlertType.BRUTE_FORCE_ATTEMPT.value
    if "account-lockout" in tags:
        return AlertType.ACCOUNT_LOCKED.value

    if event_type == SecurityEventType.ACCOUNT_LOCKED.value:
        return AlertType.ACCOUNT_LOCKED.value
    if event_type == SecurityEventType.LOGIN_FAILED.value:
        if result.score and result.score > 80:
            return AlertType.SUSPICIOUS_LOGIN.value
        return AlertType.MULTIPLE_FAILED_ATTEMPTS.value
    if event_type == SecurityEventType.SUSPICIOUS_ACTIVITY.value:
        return AlertType.SUSPICIOUS_LOGIN.value
    return AlertType.THREAT_RULE_MATCH.value


def generate_title(result: RuleResult, context: RuleContext) -> str:
    user = context.email or context.user_id or "Unknown user"
    if result.rule_name:
        return f"{result.rule_name} triggered for {user}"
    return f"Security threat detected for {user} from {context.ip_address or 'unknown location'}"


def generate_tags(result: RuleResult, context: RuleContext) -> list[str]:
    tags = list(result.tags or [])
    tags.append(f"severity:{(result.severity or 'MEDIUM').lower()}")
    meta = context.metadata or {}
    if meta.get("device_type"):
        tags.append(f"device:{meta['device_type']}")
    if meta.get("location"):
        tags.append(f"location:{meta['location']}")
    return tags


def process_rule_matches(results: list[RuleResult], context: RuleContext) -> list[dict]:
    """Treffer -> Alert-Entwürfe (dicts mit den Spalten von SecurityAlert)."""
    drafts: list[dict] = []
    for result in results:
        if not result.matched:
            continue
        drafts.append({
            "type": map_alert_type(context.event_type, result),
            "severity": result.severity or ThreatSeverity.MEDIUM.value,
            "title": generate_title(result, context),
            "description": result.reason or "Security threat detected",
            "fingerprint": generate_fingerprint(
                context.event_type,
                user_id=context.user_id,
                ip_address=context.ip_address,
                rule_id=result.rule_id,
            ),
            "rule_id": result.rule_id,
            "rule_name": result.rule_name,
            "event_type": context.event_type,
            "user_id": context.user_id,
            "user_email": context.email,
            "session_id": context.session_id,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "score": result.score,
            "evidence": result.evidence or {},
            "context": {
                "metadata": context.metadata or {},
                "suggested_actions": list(result.suggested_actions),
            },
            "tags": generate_tags(result, context),
        })
    return drafts


# ─────────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────────

class AlertEngine:
    """Koordiniert die Alert-Pipeline und hält die Verarbeitungsmetriken."""

    def __init__(
        self,
        deduplicator: Optional[AlertDeduplicator] = None,
        alert_dispatcher: Optional[AlertDispatcher] = None,
    ):
        self.dedup = deduplicator or default_dedup
        self.dispatcher = alert_dispatcher or default_dispatcher
        self._lock = threading.Lock()
        self._metrics = self._empty_metrics()
        self._timed_events = 0

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "events_processed": 0,
            "alerts_generated": 0,
            "alerts_suppressed": 0,
            "alerts_dispatched": 0,
            "processing_errors": 0,
            "average_processing_time_ms": 0.0,
        }

    def _count(self, key: str, n: int = 1) -> None:
        with self._lock:
            self._metrics[key] += n

    def reset_metrics(self) -> None:
        with self._lock:
            self._metrics = self._empty_metrics()
            self._timed_events = 0

    # --- Einstieg -----------------------------------------------------------

    def handle_rule_matches(self, db: Session, results: list[RuleResult], context: RuleContext) -> list[dict]:
        """Verarbeitet die Treffer eines Events. Fehler brechen den Login-Flow nicht."""
        started = time.perf_counter()
        self._count("events_processed")
        outcomes: list[dict] = []
        try:
            for draft in process_rule_matches(results, context):
                outcomes.append(self.process_alert(db, draft))
        except Exception:
            db.rollback()
            self._count("processing_errors")
            logger.error("Fehler bei der Alert-Verarbeitung", exc_info=True)
            return outcomes

        elapsed = (time.perf_counter() - started) * 1000
        # Mittel nur über Events, die ohne Fehler durchliefen
        with self._lock:
            self._timed_events += 1
            n = self._timed_events
            avg = self._metrics["average_processing_time_ms"]
            self._metrics["average_processing_time_ms"] = (avg * (n - 1) + elapsed) / n
        return outcomes

    def process_alert(self, db: Session, draft: dict) -> dict:
        """Einen Entwurf durch Dedup, Persistenz, Korrelation und Dispatch schicken.

        Returns: {alert_id, status: created|deduplicated, is_duplicate, correlation_id}
        """
        fingerprint = draft["fingerprint"]
        existing = self._find_duplicate(db, fingerprint)
        if existing is not None:
            self._update_duplicate(db, existing, draft)
            self._count("alerts_suppressed")
            return {
                "alert_id": existing.id,
                "status": "deduplicated",
                "is_duplicate": True,
                "correlation_id": existing.correlation_id,
            }

        alert = self.create_alert(db, draft)
        self._count("alerts_generated")
        self.dedup.register_alert(fingerprint, {
            "alert_id": alert.id,
            "type": alert.type,
            "severity": alert.severity,
            "user_id": alert.user_id,
            "ip_address": alert.ip_address,
        })

        correlation = correlate_alert(db, alert)
        if correlation.should_escalate:
            self.escalate_alert(db, alert, correlation.escalation_reason or "correlation threshold reached")

        if self.should_dispatch(db, alert):
            self.dispatcher.submit(db, alert)
            self._count("alerts_dispatched")

        logger.info(
            "alert_created",
            alert_id=alert.id,
            type=alert.type,
            severity=alert.severity,
            correlation_id=alert.correlation_id or correlation.correlation_id,
        )
        return {
            "alert_id": alert.id,
            "status": "created",
            "is_duplicate": False,
            "correlation_id": alert.correlation_id or correlation.correlation_id,
        }

    # --- Deduplizierung -----------------------------------------------------

    def _find_duplicate(self, db: Session, fingerprint: str) -> Optional[SecurityAlert]:
        if self.dedup.check_duplicate(fingerprint):
            info = self.dedup.get_alert_info(fingerprint) or {}
            alert = db.get(SecurityAlert, info.get("alert_id")) if info.get("alert_id") else None
            if alert is not None:
                return alert
            self.dedup.remove_alert(fingerprint)

        # Prozessneustart oder anderer Worker: Fingerprint steckt schon in der DB
        alert = (
            db.query(SecurityAlert)
            .filter(SecurityAlert.fingerprint == fingerprint)
            .filter(SecurityAlert.status.in_(_OPEN_STATUSES))
            .order_by(SecurityAlert.created_at.desc())
            .first()
        )
        if alert is not None:
            self.dedup.register_alert(fingerprint, {
                "alert_id": alert.id,
                "type": alert.type,
                "severity": alert.severity,
                "user_id": alert.user_id,
                "ip_address": alert.ip_address,
            })
        return alert

    def _update_duplicate(self, db: Session, alert: SecurityAlert, draft: dict) -> None:
        now = utc_now_iso()
        evidence = dict(alert.evidence or {})
        evidence.update(draft.get("evidence") or {})
        evidence["occurrences"] = list((alert.evidence or {}).get("occurrences") or []) + [
            {"timestamp": now, "context": draft.get("context")},
        ]
        alert.evidence = evidence
        alert.occurrence_count = (alert.occurrence_count or 1) + 1
        alert.last_seen = now
        alert.score = max(alert.score or 0, draft.get("score") or 0)
        alert.updated_at = now
        db.commit()
        self.dedup.update_occurrence(alert.fingerprint)
        logger.debug(f"Alert {alert.id} dedupliziert (Vorkommen: {alert.occurrence_count})")

    # --- Persistenz ---------------------------------------------------------

    def create_alert(self, db: Session, draft: dict) -> SecurityAlert:
        now = utc_now_iso()
        alert = SecurityAlert(
            id=str(uuid.uuid4()),
            type=draft["type"],
            severity=draft["severity"],
            title=draft["title"],
            description=draft["description"],
            fingerprint=draft["fingerprint"],
            status=AlertStatus.PENDING.value,
            rule_id=draft.get("rule_id"),
            rule_name=draft.get("rule_name"),
            event_type=draft.get("event_type"),
            user_id=draft.get("user_id"),
            user_email=draft.get("user_email"),
            session_id=draft.get("session_id"),
            ip_address=draft.get("ip_address"),
            user_agent=draft.get("user_agent"),
            location=draft.get("location"),
            score=draft.get("score"),
            evidence=draft.get("evidence") or {},
            context=draft.get("context") or {},
            tags=list(draft.get("tags") or []),
            is_correlated=False,
            occurrence_count=1,
            first_seen=now,
            last_seen=now,
            dispatch_attempts=0,
            created_at=now,
            updated_at=now,
        )
        db.add(alert)
        db.commit()
        return alert

    def escalate_alert(self, db: Session, alert: SecurityAlert, reason: str) -> None:
        old = alert.severity
        alert.severity = increase_severity(old)
        alert.description = f"{alert.description}\n\nESCALATED: {reason}"
        tags = list(alert.tags or [])
        if "escalated" not in tags:
            tags.append("escalated")
        alert.tags = tags
        alert.updated_at = utc_now_iso()
        db.commit()

        log_security_event(
            db,
            SecurityEventType.ALERT_ESCALATED,
            user_id=alert.user_id,
            ip_address=alert.ip_address,
            session_id=alert.session_id,
            severity=LogSeverity.WARNING,
            metadata={
                "alert_id": alert.id,
                "old_severity": old,
                "new_severity": alert.severity,
                "reason": reason,
                "correlation_id": alert.correlation_id,
            },
            message=f"Alert escalated: {reason}",
        )
        security_log(
            "ALERT_ESCALATED",
            alert.severity,
            user_id=alert.user_id or alert.user_email,
            ip=alert.ip_address,
            details={"alert_id": alert.id, "old_severity": old, "reason": reason},
        )

    def should_dispatch(self, db: Session, alert: SecurityAlert) -> bool:
        if alert.severity == ThreatSeverity.LOW.value and not config.DISPATCH_LOW_SEVERITY_ALERTS:
            return False

        if alert.status == AlertStatus.SUPPRESSED.value:
            return False
        until = parse_iso(alert.suppressed_until)
        if until is not None and until > utc_now():
            return False

        since = to_iso(utc_now() - timedelta(hours=1))
        q = (
            db.query(SecurityAlert)
            .filter(SecurityAlert.dispatch_attempts > 0)
            .filter(SecurityAlert.last_dispatch_at >= since)
        )
        if alert.user_id:
            q = q.filter(SecurityAlert.user_id == alert.user_id)
        else:
            q = q.filter(SecurityAlert.user_id.is_(None))
        return q.count() < config.MAX_ALERT_DISPATCHES_PER_HOUR

    # --- Alerts aus Services / manuell ----------------------------------------

    def create_manual_alert(
        self,
        db: Session,
        *,
        title: str,
        description: str,
        severity: str,
        alert_type: Optional[str] = None,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        evidence: Optional[dict] = None,
        metadata: Optional[dict] = None,
        tags: Optional[list[str]] = None,
        rule_id: str = "manual",
        actor: Optional[str] = None,
    ) -> SecurityAlert:
        """Alert ohne Regel-Treffer anlegen und durch die Pipeline schicken.

        Liefert den neuen Alert, bei einem Duplikat den bestehenden.
        """
        alert_type = alert_type or AlertType.THREAT_RULE_MATCH.value
        draft = {
            "type": alert_type,
            "severity": severity,
            "title": title,
            "description": description,
            "fingerprint": generate_fingerprint(
                alert_type,
                user_id=user_id,
                ip_address=ip_address,
                rule_id=rule_id,
            ),
            "rule_id": rule_id,
            "user_id": user_id,
            "user_email": user_email,
            "ip_address": ip_address,
            "user_agent": user_agent,
            "session_id": session_id,
            "evidence": evidence or {},
            "context": metadata or {},
            "tags": tags or ["manual"],
        }
        outcome = self.process_alert(db, draft)
        if actor:
            audit_log("ALERT_CREATE", actor, {"alert_id": outcome["alert_id"], "type": alert_type})
        return db.get(SecurityAlert, outcome["alert_id"])

    def send_alert(
        self,
        db: Session,
        alert_type: AlertType | str,
        severity: ThreatSeverity | str,
        message: str,
        *,
        email: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Optional[SecurityAlert]:
        """Service-Alert (Sperre, Rate-Limit ...). Fehler werden geloggt, nicht geworfen."""
        alert_type = alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)
        severity = severity.value if isinstance(severity, ThreatSeverity) else str(severity)
        title = {
            AlertType.ACCOUNT_LOCKED.value: "Account locked",
            AlertType.SUSPICIOUS_LOGIN.value: "Suspicious login attempt",
            AlertType.BRUTE_FORCE_ATTEMPT.value: "Potential brute force attack",
            AlertType.MULTIPLE_FAILED_ATTEMPTS.value: "Multiple failed login attempts",
        }.get(alert_type, "Security alert")
        try:
            return self.create_manual_alert(
                db,
                title=title,
                description=message,
                severity=severity,
                alert_type=alert_type,
                user_id=user_id,
                user_email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                evidence=details or {},
                rule_id=f"system:{alert_type.lower()}",
                tags=["system", alert_type.lower()],
            )
        except Exception:
            db.rollback()
            self._count("processing_errors")
            logger.error(f"Service-Alert {alert_type} konnte nicht erzeugt werden", exc_info=True)
            return None

    def send_account_locked_alert(self, db: Session, email: str, user_id: Optional[str],
                                  locked_until: str, failed_attempts: int,
                                  ip_address: Optional[str] = None) -> Optional[SecurityAlert]:
        return self.send_alert(
            db, AlertType.ACCOUNT_LOCKED, ThreatSeverity.HIGH,
            f"Account {email} has been locked until {locked_until} after {failed_attempts} failed login attempts",
            email=email, user_id=user_id, ip_address=ip_address,
            details={"locked_until": locked_until, "failed_attempts": failed_attempts},
        )

    def send_suspicious_login_alert(self, db: Session, email: str, user_id: Optional[str],
                                    ip_address: Optional[str], user_agent: Optional[str],
                                    risk_score: int, reason: str) -> Optional[SecurityAlert]:
        severity = ThreatSeverity.CRITICAL if risk_score >= 80 else ThreatSeverity.HIGH
        return self.send_alert(
            db, AlertType.SUSPICIOUS_LOGIN, severity,
            f"Suspicious login attempt detected for {email} with risk score {risk_score}. Reason: {reason}",
            email=email, user_id=user_id, ip_address=ip_address, user_agent=user_agent,
            details={"risk_score": risk_score},
        )

    def send_brute_force_alert(self, db: Session, ip_address: str, attempt_count: int,
                               window_minutes: int) -> Optional[SecurityAlert]:
        return self.send_alert(
            db, AlertType.BRUTE_FORCE_ATTEMPT, ThreatSeverity.CRITICAL,
            f"Potential brute force attack detected from IP {ip_address}. "
            f"{attempt_count} attempts in {window_minutes} minutes",
            ip_address=ip_address,
            details={"attempt_count": attempt_count, "time_window_minutes": window_minutes},
        )

    def send_multiple_failed_attempts_alert(self, db: Session, email: str, user_id: Optional[str],
                                            failed_attempts: int, remaining_attempts: int,
                                            ip_address: Optional[str] = None) -> Optional[SecurityAlert]:
        severity = ThreatSeverity.HIGH if remaining_attempts <= 1 else ThreatSeverity.MEDIUM
        return self.send_alert(
            db, AlertType.MULTIPLE_FAILED_ATTEMPTS, severity,
            f"Multiple failed login attempts for {email}. {failed_attempts} failed attempts, "
            f"{remaining_attempts} attempts remaining before lockout",
            email=email, user_id=user_id, ip_address=ip_address,
            details={"failed_attempts": failed_attempts, "remaining_attempts": remaining_attempts},
        )

    # --- Lebenszyklus -------------------------------------------------------

    def _get_or_raise(self, db: Session, alert_id: str) -> SecurityAlert:
        alert = db.get(SecurityAlert, alert_id)
        if alert is None:
            raise LookupError(f"Alert not found: {alert_id}")
        return alert

    def acknowledge_alert(self, db: Session, alert_id: str, actor: str) -> SecurityAlert:
        """Raises LookupError (unbekannt) / ValueError (gelöst oder unterdrückt)."""
        alert = self._get_or_raise(db, alert_id)
        if alert.status in (AlertStatus.RESOLVED.value, AlertStatus.SUPPRESSED.value):
            raise ValueError(f"Alert {alert_id} cannot be acknowledged in status {alert.status}")
        now = utc_now_iso()
        alert.status = AlertStatus.ACKNOWLEDGED.value
        alert.acknowledged_by = actor
        alert.acknowledged_at = now
        alert.updated_at = now
        db.commit()
        audit_log("ALERT_ACKNOWLEDGE", actor, {"alert_id": alert_id})
        return alert

    def resolve_alert(self, db: Session, alert_id: str, actor: str, notes: Optional[str] = None) -> SecurityAlert:
        alert = self._get_or_raise(db, alert_id)
        if alert.status == AlertStatus.RESOLVED.value:
            raise ValueError(f"Alert {alert_id} is already resolved")
        now = utc_now_iso()
        alert.status = AlertStatus.RESOLVED.value
        alert.resolved_by = actor
        alert.resolved_at = now
        alert.resolution_notes = notes
        alert.updated_at = now
        db.commit()
        self.dedup.remove_alert(alert.fingerprint)
        audit_log("ALERT_RESOLVE", actor, {"alert_id": alert_id})
        return alert

    def suppress_alert(
        self,
        db: Session,
        alert_id: str,
        actor: str,
        *,
        until: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> SecurityAlert:
        alert = self._get_or_raise(db, alert_id)
        if alert.status == AlertStatus.RESOLVED.value:
            raise ValueError(f"Alert {alert_id} is already resolved")
        now = utc_now()
        alert.status = AlertStatus.SUPPRESSED.value
        alert.suppressed_until = to_iso(until or now + timedelta(hours=DEFAULT_SUPPRESSION_HOURS))
        alert.suppression_reason = reason
        alert.updated_at = to_iso(now)
        db.commit()
        self.dedup.remove_alert(alert.fingerprint)
        audit_log("ALERT_SUPPRESS", actor, {"alert_id": alert_id, "until": alert.suppressed_until})
        return alert

    # --- Abfragen -----------------------------------------------------------

    def get_alert(self, db: Session, alert_id: str) -> Optional[SecurityAlert]:
        return db.get(SecurityAlert, alert_id)

    def list_alerts(
        self,
        db: Session,
        *,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        alert_type: Optional[str] = None,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        correlation_id: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SecurityAlert]:
        q = db.query(SecurityAlert)
        if status:
            q = q.filter(SecurityAlert.status == status)
        if severity:
            q = q.filter(SecurityAlert.severity == severity)
        if alert_type:
            q = q.filter(SecurityAlert.type == alert_type)
        if user_id:
            q = q.filter(SecurityAlert.user_id == user_id)
        if ip_address:
            q = q.filter(SecurityAlert.ip_address == ip_address)
        if correlation_id:
            q = q.filter(SecurityAlert.correlation_id == correlation_id)
        if start_date:
            q = q.filter(SecurityAlert.created_at >= start_date)
        if end_date:
            q = q.filter(SecurityAlert.created_at <= end_date)
        return q.order_by(SecurityAlert.created_at.desc()).offset(offset).limit(limit).all()

    def get_alert_statistics(
        self,
        db: Session,
        *,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        user_id: Optional[str] = None,
        severity: Optional[str] = None,
    ) -> dict:
        q = db.query(SecurityAlert.severity, SecurityAlert.type, SecurityAlert.status)
        if start_date:
            q = q.filter(SecurityAlert.created_at >= start_date)
        if end_date:
            q = q.filter(SecurityAlert.created_at <= end_date)
        if user_id:
            q = q.filter(SecurityAlert.user_id == user_id)
        if severity:
            q = q.filter(SecurityAlert.severity == severity)
        rows = q.all()
        return {
            "total": len(rows),
            "by_severity": dict(Counter(r[0] for r in rows)),
            "by_type": dict(Counter(r[1] for r in rows)),
            "by_status": dict(Counter(r[2] for r in rows)),
            "time_range": {"start": start_date, "end": end_date} if (start_date or end_date) else None,
        }

    def get_metrics(self) -> dict:
        with self._lock:
            m = dict(self._metrics)
        processed = max(m["events_processed"], 1)
        return {
            **m,
            "alert_rate": m["alerts_generated"] / processed,
            "suppression_rate": m["alerts_suppressed"] / processed,
            "error_rate": m["processing_errors"] / processed,
            "deduplication": self.dedup.get_metrics(),
        }


alert_engine = AlertEngine()
