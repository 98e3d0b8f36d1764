"""Account-Enumeration: eine IP probiert viele (ähnliche) Benutzernamen durch."""
from __future__ import annotations

import re
from datetime import timedelta

from rapidfuzz.distance import Levenshtein

from app.enums import ConditionType, SecurityEventType, ThreatAction, ThreatSeverity
from app.threat_rules.base import NO_MATCH, RuleContext, RuleResult, ThreatRule

_NUMBER = re.compile(r"\d+")


def count_sequential(usernames: list[str]) -> int:
    """Anzahl direkt aufeinanderfolgender Paare wie user1 -> user2."""
    count = 0
    for prev, curr in zip(usernames, usernames[1:]):
        pm, cm = _NUMBER.search(prev), _NUMBER.search(curr)
        if not pm or not cm:
            continue
        if int(cm.group()) == int(pm.group()) + 1 and _NUMBER.sub("", prev, count=1) == _NUMBER.sub("", curr, count=1):
            count += 1
    return count


def average_similarity(usernames: list[str]) -> float:
    """Mittlere normalisierte Levenshtein-Ähnlichkeit aller Paare (0..1)."""
    if len(usernames) < 2:
        return 0.0
    total = 0.0
    comparisons = 0
    for i in range(len(usernames) - 1):
        for j in range(i + 1, len(usernames)):
            total += Levenshtein.normalized_similarity(usernames[i], usernames[j])
            comparisons += 1
    return total / comparisons


class AccountEnumerationRule(ThreatRule):
    rule_id = "account-enumeration-detection"
    name = "Account Enumeration Detection"
    description = "Detects attempts to enumerate valid user accounts"
    default_severity = ThreatSeverity.HIGH.value
    condition_type = ConditionType.PATTERN.value
    default_tags = ("account-enumeration", "reconnaissance", "authentication")
    default_config = {
        "patterns": ["sequential-usernames", "similar-usernames"],
        "match_type": "any",
        "lookback_minutes": 15,
        "min_attempts": 5,
        "sequential_threshold": 3,
        "similarity_threshold": 0.8,
    }

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.ip_address:
            return NO_MATCH

        cutoff = context.timestamp - timedelta(minutes=self.config["lookback_minutes"])
        attempts = sorted(
            (
                e for e in context.recent_events
                if e.ip_address == context.ip_address
                and e.timestamp >= cutoff
                and e.event_type == SecurityEventType.LOGIN_FAILED.value
            ),
            key=lambda e: e.timestamp,
        )
        usernames = [e.email or e.metadata.get("username") for e in attempts]
        if context.event_type == SecurityEventType.LOGIN_FAILED.value:
            usernames.append(context.email or context.metadata.get("username"))
        usernames = [u for u in usernames if u]

        if len(usernames) < self.config["min_attempts"]:
            return NO_MATCH

        evidence = {
            "ip_address": context.ip_address,
            "attempt_count": len(usernames),
            "sample_usernames": usernames[:5],
        }

        sequential = count_sequential(usernames)
        if sequential >= self.config["sequential_threshold"]:
            return self.match_result(
                severity=ThreatSeverity.HIGH.value,
                score=85,
                reason=f"Account enumeration detected: Sequential username pattern from IP {context.ip_address}",
                evidence={**evidence, "sequential_count": sequential},
                actions=[ThreatAction.BLOCK_IP.value, ThreatAction.INCREASE_MONITORING.value],
            )

        similarity = average_similarity(usernames)
        if similarity >= self.config["similarity_threshold"]:
            return self.match_result(
                severity=ThreatSeverity.HIGH.value,
                score=80,
                reason=f"Account enumeration detected: Similar username patterns from IP {context.ip_address}",
                evidence={**evidence, "similarity_score": round(similarity, 3)},
                actions=[ThreatAction.BLOCK_IP.value, ThreatAction.INCREASE_MONITORING.value],
            )

        return NO_MATCH

    def validate(self) -> bool:
        c = self.config
        try:
            return (
                c["lookback_minutes"] > 0
                and c["min_attempts"] > 0
                and c["sequential_threshold"] > 0
                and 0 < c["similarity_threshold"] <= 1
            )
        except (KeyError, TypeError):
            return False

    def get_description(self) -> str:
        return (
            f"Detects {self.config['min_attempts']} or more failed logins for sequential "
            f"or similar usernames from one IP within {self.config['lookback_minutes']} minutes"
        )
