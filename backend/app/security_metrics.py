"""Aggregierte Sicherheitsmetriken für das Dashboard (aus dem Security-Log)."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.enums import SecurityEventType
from app.security_log import get_security_logs
from app.timeutil import to_iso, utc_now

# Auswertungen brauchen alle Einträge im Zeitraum, nicht nur die letzten 100
METRICS_QUERY_LIMIT = 100_000
TOP_N = 10


def _logs(db: Session, event_type: SecurityEventType, start: str, end: str):
    return get_security_logs(
        db, event_type=event_type, start_date=start, end_date=end, limit=METRICS_QUERY_LIMIT,
    )


def _top(counter: Counter, key: str) -> list[dict]:
    ranked = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    return [{key: k, "count": n} for k, n in ranked[:TOP_N]]


def get_failed_login_metrics(db: Session, start: str, end: str) -> dict:
    logs = _logs(db, SecurityEventType.LOGIN_FAILED, start, end)
    by_ip = Counter(log.ip_address for log in logs if log.ip_address)
    by_user = Counter(log.user_id for log in logs if log.user_id)
    by_hour = Counter(log.created_at[:13] for log in logs)
    return {
        "total": len(logs),
        "by_ip": _top(by_ip, "ip"),
        "by_user": _top(by_user, "user_id"),
        "by_hour": [{"hour": h, "count": n} for h, n in sorted(by_hour.items())],
    }


def get_account_lockout_metrics(db: Session, start: str, end: str) -> dict:
    logs = _logs(db, SecurityEventType.ACCOUNT_LOCKED, start, end)
    by_reason = Counter((log.meta or {}).get("reason") or "unknown" for log in logs)
    by_user = Counter(log.user_id for log in logs if log.user_id)
    return {
        "total": len(logs),
        "by_reason": [{"reason": r, "count": n} for r, n in by_reason.items()],
        "by_user": _top(by_user, "user_id"),
    }


def get_suspicious_activity_metrics(db: Session, start: str, end: str) -> dict:
    logs = _logs(db, SecurityEventType.SUSPICIOUS_ACTIVITY, start, end)
    by_type = Counter(_activity_type(log.meta) for log in logs)
    by_ip = Counter(log.ip_address for log in logs if log.ip_address)
    return {
        "total": len(logs),
        "by_type": [{"type": t, "count": n} for t, n in by_type.items()],
        "by_ip": _top(by_ip, "ip"),
    }


def _activity_type(meta: Optional[dict]) -> str:
    meta = meta or {}
    if meta.get("type"):
        return str(meta["type"])
    # Treffer der Threat-Regeln tragen die Regel-ID
    detection = meta.get("threat_detection") or {}
    if detection.get("rule_id"):
        return f"rule:{detection['rule_id']}"
    return "unknown"


def calculate_trend(total_7d: int, last_24h: int) -> int:
    """Abweichung der letzten 24 h vom Tagesmittel der letzten 7 Tage in Prozent."""
    if total_7d == 0:
        return 0
    daily = total_7d / 7
    return round((last_24h - daily) / daily * 100)


def get_dashboard_metrics(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utc_now()
    end = to_iso(now)
    day = to_iso(now - timedelta(hours=24))
    week = to_iso(now - timedelta(days=7))

    failed_24h = get_failed_login_metrics(db, day, end)
    failed_7d = get_failed_login_metrics(db, week, end)
    locks_24h = get_account_lockout_metrics(db, day, end)
    locks_7d = get_account_lockout_metrics(db, week, end)
    susp_24h = get_suspicious_activity_metrics(db, day, end)
    susp_7d = get_suspicious_activity_metrics(db, week, end)

    def block(recent: dict, weekly: dict) -> dict:
        return {
            "last_24_hours": recent["total"],
            "last_7_days": weekly["total"],
            "trend": calculate_trend(weekly["total"], recent["total"]),
        }

    return {
        "summary": {
            "failed_logins": block(failed_24h, failed_7d),
            "account_lockouts": block(locks_24h, locks_7d),
            "suspicious_activities": block(susp_24h, susp_7d),
        },
        "details": {
            "top_failed_login_ips": failed_24h["by_ip"],
            "top_locked_users": locks_24h["by_user"],
            "suspicious_activity_types": susp_24h["by_type"],
        },
        "generated_at": end,
    }
