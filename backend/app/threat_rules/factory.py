"""
Regel-Factory: rule_id -> Implementierung.

Die id einer Regel bestimmt ihre Klasse. Über die API lassen sich nur
Parameter (Status, Schweregrad, config, Tags) bekannter Regeln ändern,
keine neue Logik.
"""
from __future__ import annotations

from typing import Any, Optional

from app.logging_config import get_logger
from app.threat_rules.account_enumeration import AccountEnumerationRule
from app.threat_rules.base import ThreatRule
from app.threat_rules.brute_force import BruteForceRule
from app.threat_rules.rapid_ip_change import RapidIpChangeRule
from app.threat_rules.suspicious_user_agent import SuspiciousUserAgentRule
from app.threat_rules.time_anomaly import TimeAnomalyRule

logger = get_logger(__name__)

RULE_CLASSES: dict[str, type[ThreatRule]] = {
    cls.rule_id: cls
    for cls in (
        BruteForceRule,
        AccountEnumerationRule,
        TimeAnomalyRule,
        RapidIpChangeRule,
        SuspiciousUserAgentRule,
    )
}


class InvalidRuleConfig(ValueError):
    pass


def is_supported(rule_id: str) -> bool:
    return rule_id in RULE_CLASSES


def available_rule_types() -> list[dict]:
    return [
        {
            "id": cls.rule_id,
            "name": cls.name,
            "description": cls.description,
            "condition_type": cls.condition_type,
            "default_severity": cls.default_severity,
            "default_config": cls.default_config,
        }
        for cls in RULE_CLASSES.values()
    ]


def create_rule(rule_id: str, **fields: Any) -> ThreatRule:
    """Erzeugt und validiert eine Regel.

    Raises:
        LookupError: unbekannte rule_id
        InvalidRuleConfig: config besteht validate() nicht
    """
    cls = RULE_CLASSES.get(rule_id)
    if cls is None:
        raise LookupError(f"Unknown rule type: {rule_id}")
    try:
        rule = cls(**fields)
        valid = rule.validate()
    except (TypeError, KeyError, ValueError) as e:
        raise InvalidRuleConfig(f"Invalid rule configuration for {rule_id}: {e}") from e
    if not valid:
        raise InvalidRuleConfig(f"Invalid rule configuration for {rule_id}")
    return rule


def create_from_record(record) -> Optional[ThreatRule]:
    """DB-Zeile (models.ThreatRule) -> Regel. None, wenn keine Implementierung existiert."""
    if not is_supported(record.rule_id):
        logger.warning(f"Threat-Regel {record.rule_id} hat keine Implementierung, übersprungen")
        return None
    return create_rule(
        record.rule_id,
        name=record.name,
        description=record.description,
        version=record.version,
        status=record.status,
        severity=record.severity,
        tags=record.tags or [],
        config=record.config or {},
    )


def to_record(rule: ThreatRule) -> dict:
    return {
        "rule_id": rule.rule_id,
        "name": rule.name,
        "description": rule.description,
        "version": rule.version,
        "status": rule.status,
        "severity": rule.severity,
        "condition_type": rule.condition_type,
        "tags": list(rule.tags),
        "config": rule.config,
    }


def validate_config(rule_id: str, config: Optional[dict]) -> dict:
    """{valid: bool, errors: [str]} ohne Exception."""
    try:
        create_rule(rule_id, config=config or {})
    except (LookupError, InvalidRuleConfig) as e:
        return {"valid": False, "errors": [str(e)]}
    return {"valid": True, "errors": []}
