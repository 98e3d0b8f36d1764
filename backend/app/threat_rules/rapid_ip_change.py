"""Schnelle IP-Wechsel innerhalb einer Session (Hijacking, Proxy-Hopping)."""
from __future__ import annotations

from datetime import timedelta

from app.enums import ConditionType, SecurityEventType, ThreatAction, ThreatSeverity
from app.threat_rules.base import NO_MATCH, RuleContext, RuleResult, ThreatRule

_RELEVANT = (SecurityEventType.LOGIN_SUCCESS.value, SecurityEventType.SESSION_ACTIVITY.value)


def has_ping_pong(ips: list[str]) -> bool:
    """A -> B -> A -> B irgendwo in der Folge."""
    for i in range(len(ips) - 3):
        if ips[i] == ips[i + 2] and ips[i + 1] == ips[i + 3] and ips[i] != ips[i + 1]:
            return True
    return False


class RapidIpChangeRule(ThreatRule):
    rule_id = "rapid-ip-change-detection"
    name = "Rapid IP Change Detection"
    description = "Detects suspicious patterns of rapid IP address changes"
    default_severity = ThreatSeverity.HIGH.value
    condition_type = ConditionType.PATTERN.value
    default_tags = ("ip-change", "session-security", "authentication")
    default_config = {
        "patterns": ["rapid-ip-change", "distributed-access"],
        "match_type": "any",
        "lookback_minutes": 30,
        "thresholds": {
            "max_ip_changes": 3,
            "time_window_minutes": 10,
            "min_time_between_changes_seconds": 60,
        },
        "whitelist": {
            "vpn_providers": [],
            "corporate_ranges": [],
        },
    }

    def _whitelisted(self, ip: str) -> bool:
        wl = self.config["whitelist"]
        return ip in wl["vpn_providers"] or any(ip.startswith(r) for r in wl["corporate_ranges"])

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.event_type not in _RELEVANT:
            return NO_MATCH
        if not context.ip_address or self._whitelisted(context.ip_address):
            return NO_MATCH

        analysis = self._analyze(context)
        if not analysis or not analysis["patterns"]:
            return NO_MATCH

        return self.match_result(
            severity=self._severity(analysis),
            score=self._score(analysis),
            reason=self._reason(analysis),
            evidence={
                **analysis,
                "current_ip": context.ip_address,
                "timestamp": context.timestamp.isoformat(),
            },
            actions=self._actions(analysis),
        )

    def _analyze(self, context: RuleContext):
        if not context.user_id:
            return None
        th = self.config["thresholds"]
        cutoff = context.timestamp - timedelta(minutes=self.config["lookback_minutes"])
        events = [
            (e.timestamp, e.ip_address)
            for e in context.recent_events
            if e.timestamp >= cutoff
            and e.user_id == context.user_id
            and e.ip_address
            and e.event_type in _RELEVANT
        ]
        events.append((context.timestamp, context.ip_address))
        events.sort(key=lambda x: x[0])
        if len(events) < 2:
            return None

        changes = []
        last_time, last_ip = events[0]
        for ts, ip in events[1:]:
            if ip != last_ip:
                changes.append({
                    "from_ip": last_ip,
                    "to_ip": ip,
                    "at": ts,
                    "time_diff_seconds": (ts - last_time).total_seconds(),
                })
                last_ip, last_time = ip, ts

        ips = [ip for _, ip in events]
        unique_ips = list(dict.fromkeys(ips))
        window_start = context.timestamp - timedelta(minutes=th["time_window_minutes"])
        recent_changes = [c for c in changes if c["at"] >= window_start]
        rapid = [c for c in changes if c["time_diff_seconds"] < th["min_time_between_changes_seconds"]]
        for c in changes:
            c["timestamp"] = c.pop("at").isoformat()

        patterns = []
        if len(unique_ips) > th["max_ip_changes"]:
            patterns.append("too_many_ips")
        if rapid:
            patterns.append("rapid_changes")
        if has_ping_pong(ips):
            patterns.append("ping_pong")

        avg = round(sum(c["time_diff_seconds"] for c in changes) / len(changes)) if changes else 0
        return {
            "patterns": patterns,
            "unique_ip_count": len(unique_ips),
            "unique_ips": unique_ips,
            "total_changes": len(changes),
            "recent_changes": len(recent_changes),
            "rapid_changes": rapid,
            "average_time_between_changes": avg,
        }

    @staticmethod
    def _severity(a: dict) -> str:
        if len(a["patterns"]) > 2:
            return ThreatSeverity.CRITICAL.value
        if "rapid_changes" in a["patterns"] or "ping_pong" in a["patterns"]:
            return ThreatSeverity.HIGH.value
        if a["unique_ip_count"] > 5:
            return ThreatSeverity.HIGH.value
        return ThreatSeverity.MEDIUM.value

    @staticmethod
    def _score(a: dict) -> int:
        score = min(a["unique_ip_count"] * 15, 45)
        if "rapid_changes" in a["patterns"]:
            score += 25
        if "ping_pong" in a["patterns"]:
            score += 20
        if "too_many_ips" in a["patterns"]:
            score += 10
        if len(a["rapid_changes"]) > 2:
            score += 10
        return min(score, 100)

    def _reason(self, a: dict) -> str:
        parts = [f"Detected {a['unique_ip_count']} different IP addresses"]
        if "rapid_changes" in a["patterns"]:
            parts.append(f"with {len(a['rapid_changes'])} rapid changes")
        if "ping_pong" in a["patterns"]:
            parts.append("showing ping-pong pattern")
        parts.append(f"within {self.config['lookback_minutes']} minutes")
        return " ".join(parts)

    @staticmethod
    def _actions(a: dict) -> list[str]:
        actions = [ThreatAction.REQUIRE_2FA.value]
        if len(a["patterns"]) > 1 or a["unique_ip_count"] > 4:
            actions.append(ThreatAction.INVALIDATE_SESSIONS.value)
        if "rapid_changes" in a["patterns"] and len(a["rapid_changes"]) > 2:
            actions.append(ThreatAction.BLOCK_IP.value)
        actions.append(ThreatAction.INCREASE_MONITORING.value)
        return actions

    def validate(self) -> bool:
        c = self.config
        try:
            th = c["thresholds"]
            return (
                c["lookback_minutes"] > 0
                and th["max_ip_changes"] > 0
                and th["time_window_minutes"] > 0
                and th["min_time_between_changes_seconds"] >= 0
                and isinstance(c["patterns"], list)
            )
        except (KeyError, TypeError):
            return False

    def get_description(self) -> str:
        th = self.config["thresholds"]
        return (
            f"Detects when a user accesses from more than {th['max_ip_changes']} different "
            f"IP addresses within {th['time_window_minutes']} minutes"
        )
