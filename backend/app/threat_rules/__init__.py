"""Threat-Detection-Regeln (Implementierungen + Factory)."""
from app.threat_rules.base import NO_MATCH, RecentEvent, RuleContext, RuleResult, ThreatRule
from app.threat_rules.factory import (
    RULE_CLASSES,
    InvalidRuleConfig,
    available_rule_types,
    create_from_record,
    create_rule,
    is_supported,
    to_record,
    validate_config,
)

__all__ = [
    "NO_MATCH",
    "RecentEvent",
    "RuleContext",
    "RuleResult",
    "ThreatRule",
    "RULE_CLASSES",
    "InvalidRuleConfig",
    "available_rule_types",
    "create_from_record",
    "create_rule",
    "is_supported",
    "to_record",
    "validate_config",
]
