"""/api/alerts – Alerts, Lebenszyklus, Korrelationsgruppen, Engine-Metriken, Dispatch-Retry.

Statische Pfade stehen vor /api/alerts/{alert_id}, sonst würde FastAPI z.B.
"statistics" als alert_id interpretieren.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.alert_correlation import analyze_correlation_group, get_correlation_group, merge_correlation_groups
from app.alert_dispatch import dispatcher
from app.alert_engine import alert_engine, alert_to_dict
from app.auth import AuthContext
from app.db import SessionLocal
from app.enums import AlertStatus, ThreatSeverity
from app.logging_config import audit_log
from app.rbac import require_permission
from app.schemas import (
    ManualAlertRequest,
    MergeCorrelationRequest,
    ResolveAlertRequest,
    RetryDispatchRequest,
    SuppressAlertRequest,
)
from app.timeutil import to_iso

router = APIRouter()


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return to_iso(dt) if dt else None


@router.get("/api/alerts")
def list_alerts(
    status: Optional[AlertStatus] = None,
    severity: Optional[ThreatSeverity] = None,
    type: Optional[str] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    correlation_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    _ctx: AuthContext = Depends(require_permission("alerts:read")),
):
    with SessionLocal() as db:
        rows = alert_engine.list_alerts(
            db,
            status=status.value if status else None,
            severity=severity.value if severity else None,
            alert_type=type,
            user_id=user_id,
            ip_address=ip_address,
            correlation_id=correlation_id,
            start_date=_iso(start_date),
            end_date=_iso(end_date),
            limit=limit,
            offset=offset,
        )
        return {"alerts": [alert_to_dict(a) for a in rows], "count": len(rows), "offset": offset}


@router.post("/api/alerts", status_code=201)
def create_manual_alert(body: ManualAlertRequest, ctx: AuthContext = Depends(require_permission("alerts:write"))):
    with SessionLocal() as db:
        alert = alert_engine.create_manual_alert(
            db,
            title=body.title,
            description=body.description,
            severity=body.severity,
            alert_type=body.type,
            user_id=body.user_id,
            user_email=body.user_email,
            ip_address=body.ip_address,
            user_agent=body.user_agent,
            session_id=body.session_id,
            evidence=body.evidence,
            metadata=body.metadata,
            tags=body.tags,
            actor=ctx.user_id,
        )
        audit_log("ALERT_CREATE_MANUAL", ctx.user_id, {"alert_id": alert.id, "severity": alert.severity})
        return alert_to_dict(alert)


@router.get("/api/alerts/statistics")
def alert_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    user_id: Optional[str] = None,
    severity: Optional[ThreatSeverity] = None,
    _ctx: AuthContext = Depends(require_permission("alerts:read")),
):
    with SessionLocal() as db:
        return alert_engine.get_alert_statistics(
            db,
            start_date=_iso(start_date),
            end_date=_iso(end_date),
            user_id=user_id,
            severity=severity.value if severity else None,
        )


@router.get("/api/alerts/metrics/engine")
def engine_metrics(_ctx: AuthContext = Depends(require_permission("alerts:read"))):
    return alert_engine.get_metrics()


@router.post("/api/alerts/dispatch/retry")
def retry_dispatch(
    body: Optional[RetryDispatchRequest] = None,
    ctx: AuthContext = Depends(require_permission("alerts:write")),
):
    since = _iso(body.since) if body else None
    with SessionLocal() as db:
        result = dispatcher.retry_failed_dispatches(db, since)
    audit_log("ALERT_DISPATCH_RETRY", ctx.user_id, result)
    return result


# --- Korrelation ---

@router.post("/api/alerts/correlations/merge")
def merge_correlations(body: MergeCorrelationRequest, ctx: AuthContext = Depends(require_permission("alerts:write"))):
    with SessionLocal() as db:
        try:
            result = merge_correlation_groups(db, body.correlation_ids)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
    audit_log("ALERT_CORRELATION_MERGE", ctx.user_id, {"merged": body.correlation_ids, **result})
    return result


@router.get("/api/alerts/correlations/{correlation_id}")
def correlation_group(correlation_id: str, _ctx: AuthContext = Depends(require_permission("alerts:read"))):
    with SessionLocal() as db:
        alerts = get_correlation_group(db, correlation_id)
        if not alerts:
            raise HTTPException(status_code=404, detail="Korrelationsgruppe nicht gefunden")
        return {"correlation_id": correlation_id, "alerts": [alert_to_dict(a) for a in alerts]}


@router.get("/api/alerts/correlations/{correlation_id}/analysis")
def correlation_analysis(correlation_id: str, _ctx: AuthContext = Depends(require_permission("alerts:read"))):
    with SessionLocal() as db:
        try:
            return analyze_correlation_group(db, correlation_id)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))


# --- Einzelner Alert ---

@router.get("/api/alerts/{alert_id}")
def get_alert(alert_id: str, _ctx: AuthContext = Depends(require_permission("alerts:read"))):
    with SessionLocal() as db:
        alert = alert_engine.get_alert(db, alert_id)
        if alert is None:
            raise HTTPException(status_code=404, detail="Alert nicht gefunden")
        return alert_to_dict(alert)


def _lifecycle(fn, alert_id: str, *args, **kwargs) -> dict:
    with SessionLocal() as db:
        try:
            return alert_to_dict(fn(db, alert_id, *args, **kwargs))
        except LookupError:
            raise HTTPException(status_code=404, detail="Alert nicht gefunden")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))


@router.post("/api/alerts/{alert_id}/acknowledge")
def acknowledge_alert(alert_id: str, ctx: AuthContext = Depends(require_permission("alerts:write"))):
    return _lifecycle(alert_engine.acknowledge_alert, alert_id, ctx.user_id)


@router.post("/api/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: str,
    body: Optional[ResolveAlertRequest] = None,
    ctx: AuthContext = Depends(require_permission("alerts:write")),
):
    return _lifecycle(alert_engine.resolve_alert, alert_id, ctx.user_id, body.notes if body else None)


@router.post("/api/alerts/{alert_id}/suppress")
def suppress_alert(
    alert_id: str,
    body: Optional[SuppressAlertRequest] = None,
    ctx: AuthContext = Depends(require_permission("alerts:write")),
):
    return _lifecycle(
        alert_engine.suppress_alert, alert_id, ctx.user_id,
        until=body.until if body else None,
        reason=body.reason if body else None,
    )
