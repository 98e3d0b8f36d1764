"""
Grundtypen der Threat-Detection-Regeln.

Eine Regel bekommt einen RuleContext (aktuelles Event + jüngere Events
derselben Person/IP) und liefert ein RuleResult. Regeln sind reine
Funktionen über den Kontext: kein DB-Zugriff, keine Seiteneffekte.
Persistenz, Logging und Aktionen übernimmt die Engine.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.enums import ConditionType, RuleStatus, ThreatSeverity


@dataclass
class RecentEvent:
    """Vergangenes Event für Musteranalysen (aus login_attempt abgeleitet)."""

    event_type: str
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    success: Optional[bool] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class RuleContext:
    event_type: str
    timestamp: datetime
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    recent_events: list[RecentEvent] = field(default_factory=list)


@dataclass
class RuleResult:
    matched: bool
    severity: Optional[str] = None
    score: int = 0
    reason: str = ""
    evidence: dict = field(default_factory=dict)
    suggested_actions: list[str] = field(default_factory=list)
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    tags: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "matched": self.matched,
            "severity": self.severity,
            "score": self.score,
            "reason": self.reason,
            "evidence": self.evidence,
            "suggested_actions": list(self.suggested_actions),
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "tags": list(self.tags),
        }


NO_MATCH = RuleResult(matched=False)


def merge_config(defaults: dict, overrides: Optional[dict]) -> dict:
    """Rekursives Merge: overrides gewinnt, verschachtelte dicts werden gemischt."""
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ThreatRule:
    """Basisklasse aller Regeln.

    Unterklassen setzen die Klassenattribute und implementieren
    `evaluate`, `validate` und `get_description`.
    """

    rule_id: str = ""
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    default_status: str = RuleStatus.ACTIVE.value
    default_severity: str = ThreatSeverity.MEDIUM.value
    condition_type: str = ConditionType.PATTERN.value
    default_tags: tuple[str, ...] = ()
    default_config: dict[str, Any] = {}

    def __init__(
        self,
        *,
        rule_id: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        version: Optional[str] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        tags: Optional[list[str]] = None,
        config: Optional[dict] = None,
    ):
        self.rule_id = rule_id or self.rule_id
        self.name = name or self.name
        self.description = description or self.description
        self.version = version or self.version
        self.status = status or self.default_status
        self.severity = severity or self.default_severity
        self.tags = list(tags) if tags is not None else list(self.default_tags)
        self.config = merge_config(self.default_config, config)

    def evaluate(self, context: RuleContext) -> RuleResult:
        raise NotImplementedError

    def validate(self) -> bool:
        raise NotImplementedError

    def get_description(self) -> str:
        return self.description

    def match_result(
        self,
        *,
        severity: str,
        score: float,
        reason: str,
        evidence: dict,
        actions: list[str],
    ) -> RuleResult:
        return RuleResult(
            matched=True,
            severity=str(severity),
            score=int(round(min(score, 100))),
            reason=reason,
            evidence=evidence,
            suggested_actions=list(dict.fromkeys(str(a) for a in actions)),
            rule_id=self.rule_id,
            rule_name=self.name,
            tags=list(self.tags),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.rule_id} status={self.status}>"
