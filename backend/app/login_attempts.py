"""
Login-Versuche: Aufzeichnung, Risiko-Score, Sperre, IP-Rate-Limit.

Jeder Versuch (erfolgreich oder nicht) landet in login_attempt und als
LOGIN_SUCCESS/LOGIN_FAILED in der Hash-Kette. Danach laufen die
Heuristiken (suspicious_activity) und die Threat-Regeln; deren Treffer
gehen in die Alert-Pipeline.

Lokale Adressen (Loopback, RFC1918, IPv6-Link-Local/ULA) werden nie
rate-limitiert: im Einsatz sitzen viele Clients hinter derselben
Leitstellen-IP.
"""
from __future__ import annotations

import ipaddress
import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from crawlerdetect import CrawlerDetect
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from user_agents import parse as parse_ua

from app import config
from app import suspicious_activity
from app.alert_engine import AlertEngine, alert_engine as default_alert_engine
from app.enums import LogSeverity, SecurityEventType
from app.logging_config import audit_log, get_logger, security_log
from app.models import LoginAttempt, User
from app.rule_engine import RuleEngine, engine as default_rule_engine
from app.security_log import log_security_event
from app.threat_rules import RecentEvent, RuleContext
from app.timeutil import iso_minutes_ago, parse_iso, to_iso, utc_now, utc_now_iso

logger = get_logger(__name__)

RULE_CONTEXT_LOOKBACK_MINUTES = 60
RULE_CONTEXT_MAX_EVENTS = 100

# --- User-Agent ---------------------------------------------------------------

# Risiko-Aufschlag für Clients, die keine Crawler-Signatur tragen, aber nach
# Skript oder Automatisierung aussehen
_SCRIPTED_RE = (
    re.compile(r"curl|wget|python|java|perl|ruby|go-http|scrapy", re.IGNORECASE),
    re.compile(r"headless|phantom|puppeteer|playwright", re.IGNORECASE),
    re.compile(r"bot|spider|crawl|scrape|harvest", re.IGNORECASE),
)

_crawlers = CrawlerDetect()

# RFC1918, Loopback, IPv6-Link-Local und Unique-Local (fd00::/8)
_LOCAL_NETWORKS = tuple(ipaddress.ip_network(n) for n in (
    "127.0.0.0/8",
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "::1/128",
    "fe80::/10",
    "fd00::/8",
))


@dataclass
class DeviceInfo:
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    is_bot: bool = False

    def as_dict(self) -> dict:
        return {
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
            "is_bot": self.is_bot,
        }


def is_bot(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and bool(_crawlers.isCrawler(user_agent))


def _family(value: str) -> Optional[str]:
    return None if not value or value == "Other" else value


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Geräteinfo aus dem User-Agent. Fehlender UA gilt als Bot."""
    if not user_agent:
        return DeviceInfo(is_bot=True)

    ua = parse_ua(user_agent)
    bot = is_bot(user_agent) or ua.is_bot

    if ua.is_tablet:
        device_type = "tablet"
    elif ua.is_mobile:
        device_type = "mobile"
    else:
        device_type = "bot" if bot else "desktop"

    return DeviceInfo(
        device_type=device_type,
        browser=_family(ua.browser.family) or ("bot" if bot else None),
        os=_family(ua.os.family),
        is_bot=bot,
    )


def is_local_ip(ip_address: Optional[str]) -> bool:
    if not ip_address:
        return False
    if ip_address.lower() in ("localhost", "unknown"):
        return True
    try:
        ip = ipaddress.ip_address(ip_address.split("%", 1)[0])
    except ValueError:
        return False
    return any(ip in net for net in _LOCAL_NETWORKS)


# --- Aufzeichnung -------------------------------------------------------------

@dataclass
class LoginAttemptData:
    email: str
    success: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    failure_reason: Optional[str] = None
    session_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class LockoutStatus:
    is_locked: bool
    locked_until: Optional[str] = None
    failed_attempts: int = 0


def attempt_to_dict(a: LoginAttempt) -> dict:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "email": a.email,
        "ip_address": a.ip_address,
        "user_agent": a.user_agent,
        "success": a.success,
        "failure_reason": a.failure_reason,
        "device_type": a.device_type,
        "browser": a.browser,
        "os": a.os,
        "suspicious": a.suspicious,
        "risk_score": a.risk_score,
        "metadata": a.meta or {},
        "attempt_at": a.attempt_at,
    }


def calculate_risk_score(db: Session, data: LoginAttemptData) -> int:
    """0..100, berechnet vor dem Speichern des aktuellen Versuchs."""
    score = 0
    if not data.success:
        score += 20

    recent = (
        db.query(LoginAttempt)
        .filter(LoginAttempt.email == data.email)
        .filter(LoginAttempt.attempt_at >= iso_minutes_ago(60))
        .order_by(LoginAttempt.attempt_at.desc())
        .limit(10)
        .all()
    )
    failed = sum(1 for a in recent if not a.success)
    score += min(failed * 10, 30)
    if len({a.ip_address for a in recent}) > 3:
        score += 20

    ua = data.user_agent
    if not ua:
        score += 15
    elif is_bot(ua):
        score += 25
    elif any(rx.search(ua) for rx in _SCRIPTED_RE):
        score += 20

    return min(score, 100)


def build_rule_context(db: Session, data: LoginAttemptData, attempt: LoginAttempt) -> RuleContext:
    """Kontext für die Threat-Regeln: aktueller Versuch + letzte Stunde.

    Der aktuelle Versuch selbst ist nicht in recent_events enthalten.
    """
    conditions = [LoginAttempt.email == data.email]
    if data.user_id:
        conditions.append(LoginAttempt.user_id == data.user_id)
    if data.ip_address:
        conditions.append(LoginAttempt.ip_address == data.ip_address)

    rows = (
        db.query(LoginAttempt)
        .filter(or_(*conditions))
        .filter(LoginAttempt.attempt_at >= iso_minutes_ago(RULE_CONTEXT_LOOKBACK_MINUTES))
        .filter(LoginAttempt.id != attempt.id)
        .order_by(LoginAttempt.attempt_at.desc())
        .limit(RULE_CONTEXT_MAX_EVENTS)
        .all()
    )
    recent = [
        RecentEvent(
            event_type=(SecurityEventType.LOGIN_SUCCESS if r.success else SecurityEventType.LOGIN_FAILED).value,
            timestamp=parse_iso(r.attempt_at),
            ip_address=r.ip_address,
            user_agent=r.user_agent,
            user_id=r.user_id,
            email=r.email,
            success=r.success,
            metadata={
                "device_type": r.device_type,
                "browser": r.browser,
                "os": r.os,
                "risk_score": r.risk_score,
                **(r.meta or {}),
            },
        )
        for r in rows
    ]
    return RuleContext(
        event_type=(SecurityEventType.LOGIN_SUCCESS if data.success else SecurityEventType.LOGIN_FAILED).value,
        timestamp=parse_iso(attempt.attempt_at) or utc_now(),
        user_id=data.user_id,
        email=data.email,
        ip_address=data.ip_address,
        user_agent=data.user_agent,
        session_id=data.session_id,
        metadata={
            **(data.metadata or {}),
            "device_type": attempt.device_type,
            "browser": attempt.browser,
            "os": attempt.os,
            "risk_score": attempt.risk_score,
        },
        recent_events=recent,
    )


def record_login_attempt(
    db: Session,
    data: LoginAttemptData,
    *,
    rules: Optional[RuleEngine] = None,
    alerts: Optional[AlertEngine] = None,
) -> LoginAttempt:
    rules = rules or default_rule_engine
    alerts = alerts or default_alert_engine

    device = parse_user_agent(data.user_agent)
    risk = calculate_risk_score(db, data)

    attempt = LoginAttempt(
        id=str(uuid.uuid4()),
        user_id=data.user_id,
        email=data.email,
        ip_address=data.ip_address,
        user_agent=data.user_agent,
        success=data.success,
        failure_reason=data.failure_reason,
        device_type=device.device_type,
        browser=device.browser,
        os=device.os,
        suspicious=risk > 70 or device.is_bot,
        risk_score=risk,
        meta={**(data.metadata or {}), "bot_detected": device.is_bot},
        attempt_at=utc_now_iso(),
    )
    db.add(attempt)
    db.commit()
    logger.info(f"Login-Versuch für {data.email} von {data.ip_address} aufgezeichnet (Risiko {risk})")

    if risk > config.SUSPICIOUS_LOGIN_RISK_SCORE:
        alerts.send_suspicious_login_alert(
            db, data.email, data.user_id, data.ip_address, data.user_agent, risk,
            data.failure_reason or "High risk score detected",
        )

    log_security_event(
        db,
        SecurityEventType.LOGIN_SUCCESS if data.success else SecurityEventType.LOGIN_FAILED,
        user_id=data.user_id,
        ip_address=data.ip_address,
        user_agent=data.user_agent,
        session_id=data.session_id,
        severity=LogSeverity.INFO if data.success else LogSeverity.WARNING,
        metadata={
            "email": data.email,
            "failure_reason": data.failure_reason,
            "suspicious": attempt.suspicious,
            "risk_score": risk,
        },
    )

    if not data.success and data.ip_address:
        suspicious_activity.check_brute_force_pattern(db, data.ip_address)
        suspicious_activity.check_account_enumeration(db, data.ip_address)
    if data.success and data.user_id:
        suspicious_activity.check_login_patterns(db, data.user_id, data.ip_address)

    evaluate_threat_rules(db, data, attempt, rules=rules, alerts=alerts)
    return attempt


def evaluate_threat_rules(
    db: Session,
    data: LoginAttemptData,
    attempt: LoginAttempt,
    *,
    rules: RuleEngine,
    alerts: AlertEngine,
) -> list[dict]:
    """Regeln auswerten und Treffer an die Alert-Pipeline geben.

    Fehler werden geloggt; ein Login scheitert nie an der Regel-Auswertung.
    """
    try:
        context = build_rule_context(db, data, attempt)
        results = rules.evaluate(db, context)
    except Exception:
        db.rollback()
        logger.error("Threat-Regeln konnten nicht ausgewertet werden", exc_info=True)
        return []

    if not results:
        return []
    logger.warning(
        "threat_rules_matched",
        email=data.email,
        matched_rules=len(results),
        severities=[r.severity for r in results],
    )
    return alerts.handle_rule_matches(db, results, context)


# --- Sperre -------------------------------------------------------------------

def count_failed_attempts(db: Session, email: str, minutes: Optional[int] = None) -> int:
    window = minutes if minutes is not None else config.LOGIN_WINDOW_MINUTES
    return (
        db.query(func.count(LoginAttempt.id))
        .filter(LoginAttempt.email == email)
        .filter(LoginAttempt.success.is_(False))
        .filter(LoginAttempt.attempt_at >= iso_minutes_ago(window))
        .scalar()
        or 0
    )


def check_and_update_lockout(
    db: Session,
    email: str,
    *,
    ip_address: Optional[str] = None,
    alerts: Optional[AlertEngine] = None,
) -> LockoutStatus:
    alerts = alerts or default_alert_engine
    failed = count_failed_attempts(db, email)
    if failed < config.LOGIN_MAX_ATTEMPTS:
        return LockoutStatus(is_locked=False, failed_attempts=failed)

    locked_until = to_iso(utc_now() + timedelta(minutes=config.LOGIN_LOCKOUT_MINUTES))
    user = db.query(User).filter(User.email == email).first()
    if user is not None:
        user.locked_until = locked_until
        user.failed_login_count = failed
        db.commit()

    logger.warning(f"Account {email} gesperrt bis {locked_until}")
    security_log(
        "ACCOUNT_LOCKED", "HIGH",
        user_id=user.user_id if user else email,
        ip=ip_address,
        details={"locked_until": locked_until, "failed_attempts": failed},
    )
    if user is not None:
        log_security_event(
            db,
            SecurityEventType.ACCOUNT_LOCKED,
            user_id=user.user_id,
            ip_address=ip_address,
            severity=LogSeverity.WARNING,
            metadata={"locked_until": locked_until, "failed_attempts": failed, "reason": "max_attempts"},
        )

    alerts.send_account_locked_alert(
        db, email, user.user_id if user else None, locked_until, failed, ip_address,
    )
    return LockoutStatus(is_locked=True, locked_until=locked_until, failed_attempts=failed)


def is_account_locked(db: Session, email: str) -> bool:
    """Abgelaufene Sperren werden dabei zurückgesetzt."""
    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.locked_until:
        return False
    until = parse_iso(user.locked_until)
    if until is None or until <= utc_now():
        user.locked_until = None
        user.failed_login_count = 0
        db.commit()
        return False
    return True


def get_locked_until(db: Session, email: str) -> Optional[str]:
    user = db.query(User).filter(User.email == email).first()
    return user.locked_until if user else None


def reset_failed_attempts(db: Session, email: str) -> bool:
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        return False
    user.failed_login_count = 0
    user.locked_until = None
    db.commit()
    return True


def unlock_account(db: Session, email: str, actor: str) -> bool:
    """Manuelle Entsperrung durch einen Admin. False, wenn der User fehlt."""
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        return False
    was_locked = bool(user.locked_until)
    user.failed_login_count = 0
    user.locked_until = None
    db.commit()

    log_security_event(
        db,
        SecurityEventType.ACCOUNT_UNLOCKED,
        user_id=user.user_id,
        metadata={"email": email, "unlocked_by": actor, "was_locked": was_locked},
    )
    audit_log("ACCOUNT_UNLOCK", actor, {"email": email, "was_locked": was_locked})
    return True


def check_ip_rate_limit(db: Session, ip_address: Optional[str], *, alerts: Optional[AlertEngine] = None) -> bool:
    """True, wenn die IP zu viele Versuche im Fenster hat."""
    if not ip_address or is_local_ip(ip_address):
        return False
    alerts = alerts or default_alert_engine

    count = (
        db.query(func.count(LoginAttempt.id))
        .filter(LoginAttempt.ip_address == ip_address)
        .filter(LoginAttempt.attempt_at >= iso_minutes_ago(config.IP_RATE_LIMIT_MINUTES))
        .scalar()
        or 0
    )
    if count < config.IP_RATE_LIMIT_ATTEMPTS:
        return False

    logger.warning(f"IP-Rate-Limit überschritten: {ip_address} ({count} Versuche)")
    alerts.send_brute_force_alert(db, ip_address, count, config.IP_RATE_LIMIT_MINUTES)
    return True


def check_multiple_failed_attempts(
    db: Session,
    email: str,
    user_id: Optional[str],
    failed_attempts: int,
    remaining_attempts: int,
    ip_address: Optional[str] = None,
    *,
    alerts: Optional[AlertEngine] = None,
) -> bool:
    """Warn-Alert ab MULTIPLE_FAILED_ATTEMPTS_WARNING Fehlversuchen."""
    if failed_attempts < config.MULTIPLE_FAILED_ATTEMPTS_WARNING:
        return False
    alerts = alerts or default_alert_engine
    alerts.send_multiple_failed_attempts_alert(
        db, email, user_id, failed_attempts, remaining_attempts, ip_address,
    )
    return True


# --- Auswertung ---------------------------------------------------------------

def get_login_stats(
    db: Session,
    start_date: str,
    end_date: str,
    email: Optional[str] = None,
) -> dict:
    q = db.query(LoginAttempt).filter(
        LoginAttempt.attempt_at >= start_date,
        LoginAttempt.attempt_at <= end_date,
    )
    if email:
        q = q.filter(LoginAttempt.email == email)
    rows = q.all()
    total = len(rows)
    successful = sum(1 for r in rows if r.success)
    return {
        "total_attempts": total,
        "successful_attempts": successful,
        "failed_attempts": total - successful,
        "unique_ips": len({r.ip_address for r in rows}),
        "suspicious_attempts": sum(1 for r in rows if r.suspicious),
        "average_risk_score": round(sum(r.risk_score or 0 for r in rows) / total) if total else 0,
        "period_start": start_date,
        "period_end": end_date,
    }


def get_recent_attempts(db: Session, email: Optional[str] = None, limit: int = 10) -> list[LoginAttempt]:
    q = db.query(LoginAttempt)
    if email:
        q = q.filter(LoginAttempt.email == email)
    return q.order_by(LoginAttempt.attempt_at.desc()).limit(limit).all()
