"""/api/threat-rules – Verwaltung, Trockenlauf und Statistik der Threat-Detection-Regeln."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from app.auth import AuthContext
from app.db import SessionLocal
from app.enums import RuleStatus, ThreatSeverity
from app.logging_config import audit_log
from app.rbac import require_permission
from app.rule_engine import engine
from app.schemas import RuleTestRequest, ThreatRuleCreate, ThreatRuleUpdate
from app.threat_rule_service import (
    create_threat_rule,
    delete_threat_rule,
    get_rule_statistics,
    get_threat_rule,
    list_threat_rules,
    reload_rules,
    rule_to_dict,
    update_threat_rule,
)
from app.threat_rules import InvalidRuleConfig, available_rule_types, create_rule

router = APIRouter()


@router.get("/api/threat-rules")
def list_rules(
    status: Optional[RuleStatus] = None,
    severity: Optional[ThreatSeverity] = None,
    tags: Optional[list[str]] = Query(default=None),
    _ctx: AuthContext = Depends(require_permission("rules:read")),
):
    with SessionLocal() as db:
        rows = list_threat_rules(
            db,
            status=status.value if status else None,
            severity=severity.value if severity else None,
            tags=tags,
        )
        return {"rules": [rule_to_dict(r) for r in rows], "available_types": available_rule_types()}


@router.post("/api/threat-rules", status_code=201)
def create_rule_endpoint(body: ThreatRuleCreate, ctx: AuthContext = Depends(require_permission("rules:write"))):
    with SessionLocal() as db:
        try:
            record = create_threat_rule(db, body.model_dump(exclude_none=True), actor=ctx.user_id)
        except InvalidRuleConfig as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LookupError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return rule_to_dict(record)


@router.get("/api/threat-rules/statistics/overview")
def rules_overview(_ctx: AuthContext = Depends(require_permission("rules:read"))):
    with SessionLocal() as db:
        return get_rule_statistics(db)


@router.get("/api/threat-rules/metrics/engine")
def rules_engine_metrics(_ctx: AuthContext = Depends(require_permission("rules:read"))):
    return engine.get_metrics()


@router.post("/api/threat-rules/test")
def test_rule(body: RuleTestRequest, _ctx: AuthContext = Depends(require_permission("rules:write"))):
    """Trockenlauf: Regel (gespeicherte Konfiguration + Overrides) gegen einen Kontext."""
    with SessionLocal() as db:
        record = get_threat_rule(db, body.rule_id)
        fields = {}
        if record is not None:
            fields = {"name": record.name, "severity": record.severity, "config": record.config or {}}
    if body.config is not None:
        fields["config"] = body.config
    if body.severity is not None:
        fields["severity"] = body.severity
    try:
        rule = create_rule(body.rule_id, **fields)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidRuleConfig as e:
        raise HTTPException(status_code=400, detail=str(e))
    return engine.test_rule(rule, body.context.to_context())


@router.post("/api/threat-rules/reload")
def reload(ctx: AuthContext = Depends(require_permission("rules:write"))):
    with SessionLocal() as db:
        loaded = reload_rules(db)
    audit_log("THREAT_RULE_RELOAD", ctx.user_id, {"loaded": loaded})
    return {"loaded": loaded}


@router.get("/api/threat-rules/{rule_id}")
def get_rule(rule_id: str, _ctx: AuthContext = Depends(require_permission("rules:read"))):
    with SessionLocal() as db:
        record = get_threat_rule(db, rule_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        return rule_to_dict(record)


@router.put("/api/threat-rules/{rule_id}")
def update_rule(rule_id: str, body: ThreatRuleUpdate, ctx: AuthContext = Depends(require_permission("rules:write"))):
    with SessionLocal() as db:
        try:
            record = update_threat_rule(db, rule_id, body.model_dump(exclude_none=True), actor=ctx.user_id)
        except LookupError:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
        except InvalidRuleConfig as e:
            raise HTTPException(status_code=400, detail=str(e))
        return rule_to_dict(record)


@router.delete("/api/threat-rules/{rule_id}", status_code=204)
def delete_rule(rule_id: str, ctx: AuthContext = Depends(require_permission("rules:write"))):
    with SessionLocal() as db:
        try:
            delete_threat_rule(db, rule_id, actor=ctx.user_id)
        except LookupError:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
    return Response(status_code=204)


@router.get("/api/threat-rules/{rule_id}/statistics")
def rule_statistics(rule_id: str, _ctx: AuthContext = Depends(require_permission("rules:read"))):
    with SessionLocal() as db:
        if get_threat_rule(db, rule_id) is None:
            raise HTTPException(status_code=404, detail="Regel nicht gefunden")
    registered = engine.get_rule(rule_id)
    return {
        "rule_id": rule_id,
        "registered": registered is not None,
        "stats": engine.get_rule_stats(rule_id) or {
            "executions": 0, "matches": 0, "last_execution": None, "average_execution_time_ms": 0.0,
        },
    }
