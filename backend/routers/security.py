"""/api/security – Security-Log (Hash-Kette), Metriken, Login-Versuche, Entsperren."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app import config
from app.auth import AuthContext
from app.db import SessionLocal
from app.enums import SecurityEventType
from app.logging_config import audit_log
from app.login_attempts import attempt_to_dict, get_login_stats, get_recent_attempts, unlock_account
from app.rbac import require_permission
from app.security_log import (
    cleanup_old_logs,
    create_log_chain_checkpoint,
    detect_log_anomalies,
    export_verified_logs,
    get_security_logs,
    security_log_to_dict,
    verify_log_chain_integrity,
)
from app.security_metrics import (
    get_account_lockout_metrics,
    get_dashboard_metrics,
    get_failed_login_metrics,
    get_suspicious_activity_metrics,
)
from app.timeutil import parse_iso, to_iso, utc_now

router = APIRouter()


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return to_iso(dt) if dt else None


def _range(start_date: Optional[datetime], end_date: Optional[datetime], default_hours: int = 24) -> tuple[str, str]:
    end = to_iso(end_date or utc_now())
    start = to_iso(start_date) if start_date else to_iso(parse_iso(end) - timedelta(hours=default_hours))
    if start > end:
        raise HTTPException(status_code=400, detail="start_date liegt nach end_date")
    return start, end


# --- Security-Log ---

@router.get("/api/security/logs")
def list_security_logs(
    event_type: Optional[SecurityEventType] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    with SessionLocal() as db:
        rows = get_security_logs(
            db,
            event_type=event_type,
            user_id=user_id,
            ip_address=ip_address,
            start_date=_iso(start_date),
            end_date=_iso(end_date),
            limit=limit,
        )
        return {"logs": [security_log_to_dict(r) for r in rows], "count": len(rows)}


@router.get("/api/security/logs/verify")
def verify_logs(
    start_sequence: Optional[int] = Query(default=None, ge=1),
    end_sequence: Optional[int] = Query(default=None, ge=1),
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    with SessionLocal() as db:
        return verify_log_chain_integrity(db, start_sequence, end_sequence)


@router.get("/api/security/logs/anomalies")
def log_anomalies(_ctx: AuthContext = Depends(require_permission("security:read"))):
    with SessionLocal() as db:
        return detect_log_anomalies(db)


@router.post("/api/security/logs/checkpoint")
def log_checkpoint(
    count: int = Query(default=100, ge=1, le=10000),
    ctx: AuthContext = Depends(require_permission("security:write")),
):
    with SessionLocal() as db:
        checkpoint = create_log_chain_checkpoint(db, count)
        if checkpoint is None:
            raise HTTPException(status_code=409, detail="Security-Log ist leer, kein Checkpoint möglich")
    audit_log("SECURITY_LOG_CHECKPOINT", ctx.user_id, {"sequence_number": checkpoint["sequence_number"]})
    return checkpoint


@router.get("/api/security/logs/export")
def export_logs(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    event_types: Optional[list[SecurityEventType]] = Query(default=None),
    verify_integrity: bool = True,
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    with SessionLocal() as db:
        return export_verified_logs(
            db,
            start_date=_iso(start_date),
            end_date=_iso(end_date),
            event_types=[t.value for t in event_types] if event_types else None,
            verify_integrity=verify_integrity,
        )


@router.post("/api/security/logs/cleanup")
def cleanup_logs(
    days_to_keep: Optional[int] = Query(default=None, ge=1),
    ctx: AuthContext = Depends(require_permission("admin:write")),
):
    days = days_to_keep or config.SECURITY_LOG_RETENTION_DAYS
    with SessionLocal() as db:
        deleted = cleanup_old_logs(db, days)
    audit_log("SECURITY_LOG_CLEANUP", ctx.user_id, {"days_to_keep": days, "deleted": deleted})
    return {"deleted": deleted, "days_to_keep": days}


# --- Metriken ---

@router.get("/api/security/metrics/dashboard")
def metrics_dashboard(_ctx: AuthContext = Depends(require_permission("security:read"))):
    with SessionLocal() as db:
        return get_dashboard_metrics(db)


@router.get("/api/security/metrics/failed-logins")
def metrics_failed_logins(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    start, end = _range(start_date, end_date)
    with SessionLocal() as db:
        return get_failed_login_metrics(db, start, end)


@router.get("/api/security/metrics/lockouts")
def metrics_lockouts(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    start, end = _range(start_date, end_date)
    with SessionLocal() as db:
        return get_account_lockout_metrics(db, start, end)


@router.get("/api/security/metrics/suspicious-activities")
def metrics_suspicious(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    start, end = _range(start_date, end_date)
    with SessionLocal() as db:
        return get_suspicious_activity_metrics(db, start, end)


# --- Login-Versuche ---

@router.get("/api/security/login-attempts")
def list_login_attempts(
    email: Optional[str] = None,
    limit: int = Query(default=10, ge=1, le=500),
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    with SessionLocal() as db:
        return {"attempts": [attempt_to_dict(a) for a in get_recent_attempts(db, email, limit)]}


@router.get("/api/security/login-stats")
def login_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    email: Optional[str] = None,
    _ctx: AuthContext = Depends(require_permission("security:read")),
):
    start, end = _range(start_date, end_date)
    with SessionLocal() as db:
        return get_login_stats(db, start, end, email)


@router.post("/api/security/unlock-account/{email}")
def unlock(email: str, ctx: AuthContext = Depends(require_permission("security:write"))):
    with SessionLocal() as db:
        if not unlock_account(db, email, ctx.user_id):
            raise HTTPException(status_code=404, detail="User nicht gefunden")
    return {"email": email, "unlocked": True}
