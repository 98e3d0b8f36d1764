"""
Heuristiken über das Security-Log.

Prüfungen (Schwellen fest, Fenster rückwärts ab jetzt):
  - rapid_login_attempts : >= 3 erfolgreiche Logins eines Users in 1 Minute
  - multiple_ips         : >= 3 verschiedene IPs eines Users in 10 Minuten
  - unusual_login_time   : Login zwischen 00:00 und 06:00 (SECURITY_TIMEZONE)
  - brute_force_attempt  : >= 10 Fehlversuche einer IP in 5 Minuten
  - account_enumeration  : >= 5 verschiedene Benutzernamen einer IP in 5 Minuten

Jeder Befund wird als SUSPICIOUS_ACTIVITY (metadata.type = Befund) in die
Hash-Kette geschrieben und in den Security-Stream geloggt. Jede Prüfung
liefert den Befund (dict) oder None.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app import config
from app.enums import LogSeverity, SecurityEventType
from app.logging_config import get_logger, security_log
from app.security_log import get_security_logs, log_security_event
from app.timeutil import to_iso, utc_now

logger = get_logger(__name__)

RAPID_LOGIN_THRESHOLD = 3
MULTIPLE_IP_THRESHOLD = 3
BRUTEFORCE_THRESHOLD = 10
ENUMERATION_THRESHOLD = 5
UNUSUAL_TIME_START = 0
UNUSUAL_TIME_END = 6


def _window(minutes: float, now: Optional[datetime] = None) -> tuple[str, str]:
    now = now or utc_now()
    return to_iso(now - timedelta(minutes=minutes)), to_iso(now)


def report_suspicious_activity(
    db: Session,
    activity_type: str,
    *,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> dict:
    finding = {"type": activity_type, **(details or {})}
    log_security_event(
        db,
        SecurityEventType.SUSPICIOUS_ACTIVITY,
        user_id=user_id,
        ip_address=ip_address,
        severity=LogSeverity.WARNING,
        metadata=finding,
    )
    security_log(
        f"SUSPICIOUS_{activity_type.upper()}",
        "MEDIUM",
        user_id=user_id,
        ip=ip_address,
        details=details,
    )
    logger.warning(f"Verdächtige Aktivität erkannt: {activity_type}", user_id=user_id, ip_address=ip_address)
    return finding


def check_rapid_login_attempts(db: Session, user_id: str, now: Optional[datetime] = None) -> Optional[dict]:
    start, end = _window(1, now)
    logins = get_security_logs(
        db, user_id=user_id, event_type=SecurityEventType.LOGIN_SUCCESS,
        start_date=start, end_date=end,
    )
    if len(logins) < RAPID_LOGIN_THRESHOLD:
        return None
    return report_suspicious_activity(
        db, "rapid_login_attempts",
        user_id=user_id,
        details={
            "login_count": len(logins),
            "time_window": "1 minute",
            "ips": [log.ip_address for log in logins if log.ip_address],
        },
    )


def check_multiple_ips(db: Session, user_id: str, now: Optional[datetime] = None) -> Optional[dict]:
    start, end = _window(10, now)
    logins = get_security_logs(
        db, user_id=user_id, event_type=SecurityEventType.LOGIN_SUCCESS,
        start_date=start, end_date=end,
    )
    ips = sorted({log.ip_address for log in logins if log.ip_address})
    if len(ips) < MULTIPLE_IP_THRESHOLD:
        return None
    return report_suspicious_activity(
        db, "multiple_ips",
        user_id=user_id,
        details={"ip_count": len(ips), "ips": ips, "time_window": "10 minutes"},
    )


def check_unusual_login_time(
    db: Session,
    user_id: str,
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    now = now or utc_now()
    hour = now.astimezone(ZoneInfo(config.SECURITY_TIMEZONE)).hour
    if not UNUSUAL_TIME_START <= hour < UNUSUAL_TIME_END:
        return None
    return report_suspicious_activity(
        db, "unusual_login_time",
        user_id=user_id,
        ip_address=ip_address,
        details={"login_time": to_iso(now), "hour": hour, "ip_address": ip_address},
    )


def check_brute_force_pattern(db: Session, ip_address: str, now: Optional[datetime] = None) -> Optional[dict]:
    start, end = _window(5, now)
    failed = get_security_logs(
        db, ip_address=ip_address, event_type=SecurityEventType.LOGIN_FAILED,
        start_date=start, end_date=end,
    )
    if len(failed) < BRUTEFORCE_THRESHOLD:
        return None
    return report_suspicious_activity(
        db, "brute_force_attempt",
        ip_address=ip_address,
        details={
            "attempt_count": len(failed),
            "time_window": "5 minutes",
            "target_users": [log.user_id for log in failed if log.user_id],
        },
    )


def check_account_enumeration(db: Session, ip_address: str, now: Optional[datetime] = None) -> Optional[dict]:
    start, end = _window(5, now)
    failed = get_security_logs(
        db, ip_address=ip_address, event_type=SecurityEventType.LOGIN_FAILED,
        start_date=start, end_date=end,
    )
    usernames = {
        (log.meta or {}).get("username") or (log.meta or {}).get("email")
        for log in failed
    }
    usernames.discard(None)
    usernames.discard("")
    if len(usernames) < ENUMERATION_THRESHOLD:
        return None
    return report_suspicious_activity(
        db, "account_enumeration",
        ip_address=ip_address,
        details={
            "attempt_count": len(failed),
            "unique_usernames": len(usernames),
            "time_window": "5 minutes",
        },
    )


def check_login_patterns(db: Session, user_id: str, ip_address: Optional[str] = None) -> list[dict]:
    """Die drei User-Prüfungen nach einem erfolgreichen Login."""
    findings = [
        check_rapid_login_attempts(db, user_id),
        check_multiple_ips(db, user_id),
        check_unusual_login_time(db, user_id, ip_address),
    ]
    return [f for f in findings if f is not None]
