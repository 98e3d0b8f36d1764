"""
Pflege der Threat-Regeln (DB + Engine-Registry synchron halten).

Jede Änderung an der Tabelle threat_rule wird sofort in der Engine
nachgezogen: ACTIVE/TESTING-Regeln werden (neu) registriert, alle anderen
entfernt. Änderungen landen zusätzlich im Audit-Log.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from app.enums import SEVERITY_ORDER, RuleStatus, ThreatSeverity
from app.logging_config import audit_log, get_logger
from app.models import ThreatRule as ThreatRuleRecord
from app.rule_engine import RuleEngine, engine as default_engine
from app.threat_rules import InvalidRuleConfig, create_from_record, create_rule
from app.timeutil import utc_now_iso

logger = get_logger(__name__)

_EDITABLE_FIELDS = ("name", "description", "version", "status", "severity", "config", "tags")
_REGISTERED_STATUSES = (RuleStatus.ACTIVE.value, RuleStatus.TESTING.value)


def rule_to_dict(r: ThreatRuleRecord) -> dict:
    return {
        "id": r.rule_id,
        "name": r.name,
        "description": r.description,
        "version": r.version,
        "status": r.status,
        "severity": r.severity,
        "condition_type": r.condition_type,
        "config": r.config or {},
        "tags": r.tags or [],
        "is_system": bool(r.is_system),
        "created_at": r.created_at,
        "created_by": r.created_by,
        "updated_at": r.updated_at,
        "updated_by": r.updated_by,
    }


def _validate(rule_id: str, data: dict) -> None:
    """Raises LookupError / InvalidRuleConfig."""
    create_rule(
        rule_id,
        name=data.get("name"),
        description=data.get("description"),
        version=data.get("version"),
        status=data.get("status"),
        severity=data.get("severity"),
        tags=data.get("tags"),
        config=data.get("config") or {},
    )


def _sync_engine(eng: RuleEngine, record: ThreatRuleRecord) -> None:
    eng.unregister_rule(record.rule_id)
    if record.status in _REGISTERED_STATUSES:
        rule = create_from_record(record)
        if rule is not None:
            eng.register_rule(rule)


def create_threat_rule(
    db: Session,
    data: dict[str, Any],
    *,
    actor: Optional[str] = None,
    eng: Optional[RuleEngine] = None,
) -> ThreatRuleRecord:
    """Neue Regel anlegen (Default-Status INACTIVE).

    Raises:
        LookupError: keine Implementierung für die id
        InvalidRuleConfig: Konfiguration ungültig
        ValueError: Regel existiert bereits
    """
    eng = eng or default_engine
    rule_id = str(data.get("id") or "").strip()
    if not rule_id:
        raise InvalidRuleConfig("Rule id is required")
    if db.get(ThreatRuleRecord, rule_id) is not None:
        raise ValueError(f"Rule already exists: {rule_id}")

    data = {**data, "status": data.get("status") or RuleStatus.INACTIVE.value}
    _validate(rule_id, data)
    proto = create_rule(rule_id)

    record = ThreatRuleRecord(
        rule_id=rule_id,
        name=data.get("name") or proto.name,
        description=data.get("description") or proto.description,
        version=data.get("version") or "1.0.0",
        status=data["status"],
        severity=data.get("severity") or proto.severity,
        condition_type=data.get("condition_type") or proto.condition_type,
        config=data.get("config") or {},
        tags=list(data.get("tags") or proto.tags),
        is_system=False,
        created_at=utc_now_iso(),
        created_by=actor,
    )
    db.add(record)
    db.commit()
    _sync_engine(eng, record)
    audit_log("THREAT_RULE_CREATE", actor or "system", {"rule_id": rule_id, "status": record.status})
    return record


def update_threat_rule(
    db: Session,
    rule_id: str,
    data: dict[str, Any],
    *,
    actor: Optional[str] = None,
    eng: Optional[RuleEngine] = None,
) -> ThreatRuleRecord:
    """Regel ändern und in der Engine neu registrieren.

    Raises:
        LookupError: Regel nicht gefunden
        InvalidRuleConfig: neue Konfiguration ungültig
    """
    eng = eng or default_engine
    record = db.get(ThreatRuleRecord, rule_id)
    if record is None:
        raise LookupError(f"Rule not found: {rule_id}")

    changes = {k: v for k, v in data.items() if k in _EDITABLE_FIELDS and v is not None}
    merged = {**rule_to_dict(record), **changes}
    _validate(rule_id, merged)

    for key, value in changes.items():
        setattr(record, key, value)
    record.updated_at = utc_now_iso()
    record.updated_by = actor
    db.commit()

    _sync_engine(eng, record)
    audit_log("THREAT_RULE_UPDATE", actor or "system", {"rule_id": rule_id, "fields": sorted(changes)})
    return record


def set_rule_status(db: Session, rule_id: str, status: RuleStatus | str, *, actor: Optional[str] = None,
                    eng: Optional[RuleEngine] = None) -> ThreatRuleRecord:
    status = status.value if isinstance(status, RuleStatus) else str(status)
    return update_threat_rule(db, rule_id, {"status": status}, actor=actor, eng=eng)


def delete_threat_rule(db: Session, rule_id: str, *, actor: Optional[str] = None,
                       eng: Optional[RuleEngine] = None) -> None:
    eng = eng or default_engine
    record = db.get(ThreatRuleRecord, rule_id)
    if record is None:
        raise LookupError(f"Rule not found: {rule_id}")
    eng.unregister_rule(rule_id)
    db.delete(record)
    db.commit()
    audit_log("THREAT_RULE_DELETE", actor or "system", {"rule_id": rule_id})


def get_threat_rule(db: Session, rule_id: str) -> Optional[ThreatRuleRecord]:
    return db.get(ThreatRuleRecord, rule_id)


def list_threat_rules(
    db: Session,
    *,
    status: Optional[str] = None,
    severity: Optional[str] = None,
    tags: Optional[list[str]] = None,
) -> list[ThreatRuleRecord]:
    """Gefilterte Regeln: aktive zuerst, dann nach Schweregrad, dann Name."""
    q = db.query(ThreatRuleRecord)
    if status:
        q = q.filter(ThreatRuleRecord.status == status)
    if severity:
        q = q.filter(ThreatRuleRecord.severity == severity)
    rows = q.all()
    if tags:
        wanted = set(tags)
        rows = [r for r in rows if wanted & set(r.tags or [])]

    status_rank = {RuleStatus.ACTIVE.value: 0, RuleStatus.TESTING.value: 1, RuleStatus.INACTIVE.value: 2}
    rows.sort(key=lambda r: (
        status_rank.get(r.status, 3),
        -(SEVERITY_ORDER.index(r.severity) if r.severity in SEVERITY_ORDER else -1),
        r.name or "",
    ))
    return rows


def get_rule_statistics(db: Session, eng: Optional[RuleEngine] = None) -> dict:
    eng = eng or default_engine
    rows = db.query(ThreatRuleRecord).all()
    return {
        "total_rules": len(rows),
        "rules_by_status": {
            s.value.lower(): sum(1 for r in rows if r.status == s.value) for s in RuleStatus
        },
        "rules_by_severity": {
            s.value.lower(): sum(1 for r in rows if r.severity == s.value) for s in ThreatSeverity
        },
        "engine_metrics": eng.get_metrics(),
    }


def batch_import_rules(
    db: Session,
    rules: list[dict],
    *,
    skip_existing: bool = False,
    update_existing: bool = False,
    actor: Optional[str] = None,
    eng: Optional[RuleEngine] = None,
) -> dict:
    """Import mehrerer Regeln. Fehler einzelner Regeln brechen den Import nicht ab."""
    stats = {"imported": 0, "skipped": 0, "updated": 0, "errors": 0}
    for data in rules:
        rule_id = str(data.get("id") or "")
        try:
            exists = db.get(ThreatRuleRecord, rule_id) is not None
            if exists and update_existing and not skip_existing:
                update_threat_rule(db, rule_id, data, actor=actor, eng=eng)
                stats["updated"] += 1
            elif exists:
                stats["skipped"] += 1
            else:
                create_threat_rule(db, data, actor=actor, eng=eng)
                stats["imported"] += 1
        except (LookupError, ValueError) as e:
            db.rollback()
            stats["errors"] += 1
            logger.error(f"Import der Regel {rule_id or '?'} fehlgeschlagen: {e}")
    logger.info(
        f"Regel-Import abgeschlossen: importiert={stats['imported']} aktualisiert={stats['updated']} "
        f"übersprungen={stats['skipped']} fehler={stats['errors']}"
    )
    return stats


def reload_rules(db: Session, eng: Optional[RuleEngine] = None) -> int:
    eng = eng or default_engine
    return eng.reload(db)
