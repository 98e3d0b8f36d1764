"""Brute-Force: viele fehlgeschlagene Logins auf dasselbe Ziel."""
from __future__ import annotations

from datetime import timedelta

from app.enums import ConditionType, SecurityEventType, ThreatAction, ThreatSeverity
from app.threat_rules.base import NO_MATCH, RecentEvent, RuleContext, RuleResult, ThreatRule


class BruteForceRule(ThreatRule):
    rule_id = "brute-force-detection"
    name = "Brute Force Detection"
    description = "Detects potential brute force attacks based on failed login attempts"
    default_severity = ThreatSeverity.HIGH.value
    condition_type = ConditionType.THRESHOLD.value
    default_tags = ("brute-force", "authentication", "login")
    default_config = {
        "threshold": 5,
        "time_window_minutes": 15,
        "count_field": "failed_attempts",
    }

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.event_type != SecurityEventType.LOGIN_FAILED.value:
            return NO_MATCH

        cutoff = context.timestamp - timedelta(minutes=self.config["time_window_minutes"])
        failed = sorted(
            (
                e for e in context.recent_events
                if e.event_type == SecurityEventType.LOGIN_FAILED.value
                and e.timestamp >= cutoff
                and self._same_target(e, context)
            ),
            key=lambda e: e.timestamp,
        )
        attempt_count = len(failed) + 1  # + aktueller Versuch

        if attempt_count < self.config["threshold"]:
            return NO_MATCH

        pattern = self._analyze(failed, context)
        evidence = {
            "attempt_count": attempt_count,
            "time_window_minutes": self.config["time_window_minutes"],
            "first_attempt": (failed[0].timestamp if failed else context.timestamp).isoformat(),
            "last_attempt": context.timestamp.isoformat(),
            **pattern,
        }
        return self.match_result(
            severity=self._severity(attempt_count, pattern),
            score=self._score(attempt_count, pattern),
            reason=self._reason(attempt_count, pattern),
            evidence=evidence,
            actions=self._actions(attempt_count, pattern),
        )

    def validate(self) -> bool:
        c = self.config
        return (
            isinstance(c.get("threshold"), int) and c["threshold"] > 0
            and isinstance(c.get("time_window_minutes"), (int, float)) and c["time_window_minutes"] > 0
            and isinstance(c.get("count_field"), str)
        )

    def get_description(self) -> str:
        return (
            f"Triggers when {self.config['threshold']} or more failed login attempts "
            f"occur within {self.config['time_window_minutes']} minutes"
        )

    @staticmethod
    def _same_target(event: RecentEvent, context: RuleContext) -> bool:
        # Ziel: User-ID, sonst E-Mail, sonst IP
        if context.user_id and event.user_id:
            return context.user_id == event.user_id
        if context.email and event.email:
            return context.email == event.email
        if context.ip_address and event.ip_address:
            return context.ip_address == event.ip_address
        return False

    @staticmethod
    def _analyze(failed: list[RecentEvent], context: RuleContext) -> dict:
        ips = {ip for ip in [context.ip_address, *(e.ip_address for e in failed)] if ip}
        agents = {ua for ua in [context.user_agent, *(e.user_agent for e in failed)] if ua}
        span_ms = (
            (context.timestamp - failed[0].timestamp).total_seconds() * 1000 if failed else 0.0
        )
        avg_gap_ms = span_ms / (len(failed) + 1)
        return {
            "unique_ip_count": len(ips),
            "unique_user_agent_count": len(agents),
            "time_span_ms": int(span_ms),
            "avg_time_between_attempts_ms": int(round(avg_gap_ms)),
            "is_distributed": len(ips) > 1,
            "is_automated": avg_gap_ms < 1000,
        }

    @staticmethod
    def _severity(count: int, pattern: dict) -> str:
        if pattern["is_distributed"] or count > 20:
            return ThreatSeverity.CRITICAL.value
        if count > 10 or pattern["is_automated"]:
            return ThreatSeverity.HIGH.value
        if count > 7:
            return ThreatSeverity.MEDIUM.value
        return ThreatSeverity.HIGH.value

    @staticmethod
    def _score(count: int, pattern: dict) -> int:
        score = min(count * 10, 50)
        if pattern["is_distributed"]:
            score += 20
        if pattern["is_automated"]:
            score += 15
        if pattern["unique_user_agent_count"] > 3:
            score += 10
        if count > 15:
            score += 5
        return min(score, 100)

    def _reason(self, count: int, pattern: dict) -> str:
        parts = [
            f"{count} failed login attempts detected within "
            f"{self.config['time_window_minutes']} minutes"
        ]
        if pattern["is_distributed"]:
            parts.append(f"from {pattern['unique_ip_count']} different IP addresses")
        if pattern["is_automated"]:
            parts.append("with automated pattern characteristics")
        return " ".join(parts)

    @staticmethod
    def _actions(count: int, pattern: dict) -> list[str]:
        actions = [ThreatAction.BLOCK_IP.value]
        if count > 10 or pattern["is_distributed"]:
            actions.append(ThreatAction.INVALIDATE_SESSIONS.value)
        if count > 15:
            actions.append(ThreatAction.REQUIRE_2FA.value)
        if pattern["is_automated"]:
            actions.append(ThreatAction.INCREASE_MONITORING.value)
        return actions
