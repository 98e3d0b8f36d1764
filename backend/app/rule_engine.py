"""
Regel-Engine: Laden, Registrieren und Evaluation der Threat-Regeln.

Ablauf pro Event:
  1. Alle registrierten Regeln mit Status ACTIVE oder TESTING evaluieren
  2. Treffer von ACTIVE-Regeln: SUSPICIOUS_ACTIVITY in die Hash-Kette,
     HIGH/CRITICAL zusätzlich ins Security-Log, vorgeschlagene Aktionen
     ausführen
  3. Treffer von TESTING-Regeln werden nur geloggt (Trockenlauf)

Die Registry lebt im Prozess und wird aus der Tabelle threat_rule befüllt
(`reload`). Schreibende Zugriffe sind per Lock geschützt.
"""
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Optional

import yaml
from sqlalchemy.orm import Session

from app import config
from app.enums import (
    SEVERITY_ORDER,
    LogSeverity,
    RuleStatus,
    SecurityEventType,
    ThreatAction,
    ThreatSeverity,
)
from app.logging_config import get_logger, security_log
from app.models import ThreatRule as ThreatRuleRecord
from app.security_log import log_security_event
from app.threat_rules import (
    InvalidRuleConfig,
    RuleContext,
    RuleResult,
    ThreatRule,
    create_from_record,
    is_supported,
)
from app.timeutil import utc_now_iso

logger = get_logger(__name__)

# --- Pfad zu threat_rules.yaml ---
RULES_PATH = Path(__file__).resolve().parent.parent.parent / "rules" / "threat_rules.yaml"

_ALERTING_SEVERITIES = (ThreatSeverity.HIGH.value, ThreatSeverity.CRITICAL.value)


def load_rules_yaml() -> dict:
    """Lädt threat_rules.yaml (mit Fallback auf eingebettete Basis-Regel)."""
    if RULES_PATH.exists():
        with RULES_PATH.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {
        "presets": {
            "minimal": ["brute-force-detection"],
            "standard": ["brute-force-detection"],
            "maximum": ["brute-force-detection"],
            "development": ["brute-force-detection"],
        },
        "rules": [
            {"id": "brute-force-detection", "name": "Brute Force Detection",
             "description": "Detects potential brute force attacks based on failed login attempts",
             "version": "1.0.0", "severity": "HIGH", "condition_type": "THRESHOLD",
             "tags": ["brute-force", "authentication", "login", "security"],
             "config": {"threshold": 5, "time_window_minutes": 15,
                        "count_field": "failed_attempts"}},
        ],
    }


def get_preset_rule_ids(preset: str, data: Optional[dict] = None) -> list[str]:
    """Regel-IDs eines Presets. Unbekanntes Preset -> standard."""
    presets = (data or load_rules_yaml()).get("presets") or {}
    ids = presets.get(preset)
    if ids is None:
        logger.warning(f"Unbekanntes Threat-Regel-Preset '{preset}', verwende 'standard'")
        ids = presets.get("standard") or []
    return list(ids)


def seed_threat_rules(db: Session, preset: Optional[str] = None) -> int:
    """Seed aus threat_rules.yaml in die DB (nur INSERT, kein UPDATE).

    Regeln aus dem Preset werden ACTIVE, alle anderen INACTIVE.
    Returns: Anzahl eingefügter Regeln.
    """
    data = load_rules_yaml()
    rules = data.get("rules", [])
    if not isinstance(rules, list):
        return 0
    active_ids = set(get_preset_rule_ids(preset or config.THREAT_RULE_PRESET, data))
    now = utc_now_iso()
    inserted = 0
    for r in rules:
        rid = r.get("id")
        if not rid or db.get(ThreatRuleRecord, rid) is not None:
            continue
        if not is_supported(rid):
            logger.warning(f"Seed: Regel {rid} ohne Implementierung, übersprungen")
            continue
        db.add(ThreatRuleRecord(
            rule_id=rid,
            name=str(r.get("name") or rid),
            description=r.get("description"),
            version=str(r.get("version") or "1.0.0"),
            status=RuleStatus.ACTIVE.value if rid in active_ids else RuleStatus.INACTIVE.value,
            severity=str(r.get("severity") or ThreatSeverity.MEDIUM.value),
            condition_type=str(r.get("condition_type") or "PATTERN"),
            config=r.get("config") or {},
            tags=list(r.get("tags") or []),
            is_system=True,
            created_at=now,
            created_by="system",
        ))
        inserted += 1
    db.commit()
    if inserted:
        logger.info(f"Threat-Regeln geseedet: {inserted} (Preset {preset or config.THREAT_RULE_PRESET})")
    return inserted


class RuleEngine:
    """Prozessweite Registry der Threat-Regeln inkl. Ausführungsstatistik."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, ThreatRule] = {}
        self._stats: dict[str, dict] = {}

    # --- Registry ---------------------------------------------------------

    def register_rule(self, rule: ThreatRule) -> None:
        if not rule.validate():
            raise InvalidRuleConfig(f"Invalid rule configuration for rule: {rule.name}")
        with self._lock:
            self._rules[rule.rule_id] = rule
        logger.info(f"Threat-Regel registriert: {rule.name} ({rule.rule_id}, {rule.status})")

    def unregister_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.info(f"Threat-Regel entfernt: {rule_id}")
        return removed

    def get_rule(self, rule_id: str) -> Optional[ThreatRule]:
        return self._rules.get(rule_id)

    def get_rules(self) -> list[ThreatRule]:
        with self._lock:
            return list(self._rules.values())

    def clear(self) -> None:
        with self._lock:
            self._rules.clear()
            self._stats.clear()

    def reload(self, db: Session) -> int:
        """Registry aus der DB neu aufbauen (ACTIVE + TESTING, kritische zuerst)."""
        rows = (
            db.query(ThreatRuleRecord)
            .filter(ThreatRuleRecord.status.in_([RuleStatus.ACTIVE.value, RuleStatus.TESTING.value]))
            .all()
        )
        rows.sort(key=lambda r: -SEVERITY_ORDER.index(r.severity) if r.severity in SEVERITY_ORDER else 0)

        loaded: dict[str, ThreatRule] = {}
        for row in rows:
            try:
                rule = create_from_record(row)
            except (LookupError, InvalidRuleConfig) as e:
                logger.error(f"Threat-Regel {row.rule_id} konnte nicht geladen werden: {e}")
                continue
            if rule is not None:
                loaded[rule.rule_id] = rule

        with self._lock:
            self._rules = loaded
        logger.info(f"Threat-Regeln geladen: {len(loaded)}")
        return len(loaded)

    # --- Evaluation -------------------------------------------------------

    def _update_stats(self, rule_id: str, matched: bool, elapsed_ms: float) -> None:
        with self._lock:
            s = self._stats.get(rule_id) or {
                "executions": 0, "matches": 0,
                "last_execution": None, "average_execution_time_ms": 0.0,
            }
            n = s["executions"]
            s["average_execution_time_ms"] = (s["average_execution_time_ms"] * n + elapsed_ms) / (n + 1)
            s["executions"] = n + 1
            s["matches"] += 1 if matched else 0
            s["last_execution"] = utc_now_iso()
            self._stats[rule_id] = s

    def evaluate(self, db: Session, context: RuleContext) -> list[RuleResult]:
        """Evaluiert alle Regeln. Gibt die Treffer der ACTIVE-Regeln zurück."""
        results: list[RuleResult] = []
        rules = [r for r in self.get_rules()
                 if r.status in (RuleStatus.ACTIVE.value, RuleStatus.TESTING.value)]

        for rule in rules:
            started = time.perf_counter()
            try:
                result = rule.evaluate(context)
            except Exception:
                logger.error(f"Fehler bei Evaluation der Regel '{rule.name}'", exc_info=True)
                continue
            self._update_stats(rule.rule_id, result.matched, (time.perf_counter() - started) * 1000)

            if not result.matched:
                continue
            if rule.status == RuleStatus.TESTING.value:
                logger.info(
                    "threat_rule_dry_run_match",
                    rule_id=rule.rule_id,
                    severity=result.severity,
                    score=result.score,
                )
                continue

            logger.warning(f"Regel '{rule.name}' getroffen, Schweregrad {result.severity}")
            self._log_match(db, rule, context, result)
            self._execute_actions(db, rule, context, result)
            results.append(result)

        return results

    def _log_match(self, db: Session, rule: ThreatRule, context: RuleContext, result: RuleResult) -> None:
        log_security_event(
            db,
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            user_id=context.user_id,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            session_id=context.session_id,
            severity=LogSeverity.WARNING,
            metadata={
                "threat_detection": {
                    "rule_name": rule.name,
                    "rule_id": rule.rule_id,
                    "severity": result.severity,
                    "score": result.score,
                    "reason": result.reason,
                    "evidence": result.evidence,
                },
            },
            message=f"Threat detected: {rule.name}. {result.reason}",
        )
        if result.severity in _ALERTING_SEVERITIES:
            security_log(
                "THREAT_DETECTED",
                result.severity,
                user_id=context.user_id or context.email,
                ip=context.ip_address,
                details={"rule_id": rule.rule_id, "score": result.score, "reason": result.reason},
            )

    def _execute_actions(self, db: Session, rule: ThreatRule, context: RuleContext, result: RuleResult) -> None:
        known = {a.value for a in ThreatAction}
        for action in result.suggested_actions:
            if action not in known:
                logger.warning(f"Unbekannte Aktion: {action}")
                continue
            logger.info("threat_action", action=action, rule_id=rule.rule_id)
            log_security_event(
                db,
                SecurityEventType.THREAT_ACTION,
                user_id=context.user_id,
                ip_address=context.ip_address,
                session_id=context.session_id,
                severity=LogSeverity.WARNING,
                metadata={
                    "action": action,
                    "rule_id": rule.rule_id,
                    "email": context.email,
                },
            )
            security_log(
                f"THREAT_ACTION_{action}",
                result.severity or ThreatSeverity.MEDIUM.value,
                user_id=context.user_id or context.email,
                ip=context.ip_address,
                details={"rule_id": rule.rule_id},
            )

    def test_rule(self, rule: ThreatRule, context: RuleContext) -> dict:
        """Trockenlauf einer Regel: kein Log, keine Aktionen, keine Statistik."""
        started = time.perf_counter()
        result = rule.evaluate(context)
        elapsed = (time.perf_counter() - started) * 1000
        return {
            "rule_id": rule.rule_id,
            "rule_name": rule.name,
            "matched": result.matched,
            "severity": result.severity,
            "score": result.score,
            "reason": result.reason,
            "evidence": result.evidence,
            "suggested_actions": list(result.suggested_actions),
            "evaluated_at": utc_now_iso(),
            "execution_time_ms": round(elapsed, 3),
        }

    # --- Statistik --------------------------------------------------------

    def get_rule_stats(self, rule_id: str) -> Optional[dict]:
        s = self._stats.get(rule_id)
        return dict(s) if s else None

    def get_metrics(self) -> dict:
        rules = self.get_rules()
        with self._lock:
            stats = {k: dict(v) for k, v in self._stats.items()}
        total_exec = sum(s["executions"] for s in stats.values())
        total_match = sum(s["matches"] for s in stats.values())
        return {
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.status == RuleStatus.ACTIVE.value),
            "total_executions": total_exec,
            "total_matches": total_match,
            "match_rate": (total_match / total_exec * 100) if total_exec else 0.0,
            "rule_stats": stats,
        }


engine = RuleEngine()
