"""Logins ausserhalb der Geschäftszeiten oder abweichend vom Muster des Users."""
from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.enums import ConditionType, SecurityEventType, ThreatAction, ThreatSeverity
from app.threat_rules.base import NO_MATCH, RuleContext, RuleResult, ThreatRule

_DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def day_index(dt: datetime) -> int:
    """Wochentag mit 0 = Sonntag (wie in der Regel-Konfiguration)."""
    return (dt.weekday() + 1) % 7


class TimeAnomalyRule(ThreatRule):
    rule_id = "time-anomaly-detection"
    name = "Time Anomaly Detection"
    description = "Detects logins at unusual times or outside business hours"
    default_severity = ThreatSeverity.MEDIUM.value
    condition_type = ConditionType.TIME_BASED.value
    default_tags = ("time-anomaly", "behavioral", "authentication")
    default_config = {
        "allowed_hours": {"start": 6, "end": 22},
        "allowed_days": [1, 2, 3, 4, 5],  # 0 = Sonntag
        "timezone": "Europe/Berlin",
        "check_user_pattern": True,
        "pattern_lookback_days": 30,
        "deviation_threshold": 2,
    }

    def _local(self, ts: datetime) -> datetime:
        return ts.astimezone(ZoneInfo(self.config["timezone"]))

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.event_type != SecurityEventType.LOGIN_SUCCESS.value:
            return NO_MATCH

        local = self._local(context.timestamp)
        violations: list[str] = []
        score = 0
        night = False

        start = self.config["allowed_hours"]["start"]
        end = self.config["allowed_hours"]["end"]
        outside_hours = local.hour < start or local.hour >= end
        if outside_hours:
            violations.append(f"Login outside allowed hours ({local.hour}:00)")
            score += 40 if local.hour < 5 else 25
            night = local.hour < 4

        dow = day_index(local)
        if dow not in self.config["allowed_days"]:
            violations.append(f"Login on non-business day ({_DAY_NAMES[dow]})")
            score += 30

        if self.config["check_user_pattern"] and context.user_id:
            deviation = self._pattern_deviation(local, context)
            if deviation is not None and deviation > self.config["deviation_threshold"]:
                violations.append(
                    "Login time deviates significantly from user pattern "
                    f"({round(deviation)}h deviation from average)"
                )
                score += min(deviation * 10, 50)

        if not violations:
            return NO_MATCH

        if night or score > 60:
            severity = ThreatSeverity.HIGH.value
        elif score > 40:
            severity = ThreatSeverity.MEDIUM.value
        else:
            severity = ThreatSeverity.LOW.value

        actions = []
        if outside_hours:
            actions.append(ThreatAction.REQUIRE_2FA.value)
        if score > 50:
            actions.append(ThreatAction.INCREASE_MONITORING.value)
        if score > 70:
            actions.append(ThreatAction.INVALIDATE_SESSIONS.value)

        return self.match_result(
            severity=severity,
            score=score,
            reason="; ".join(violations),
            evidence={
                "login_time": local.isoformat(),
                "hour": local.hour,
                "day_of_week": dow,
                "is_weekend": dow in (0, 6),
                "is_after_hours": outside_hours or dow not in self.config["allowed_days"],
                "violations": violations,
            },
            actions=actions,
        )

    def _pattern_deviation(self, local: datetime, context: RuleContext):
        cutoff = context.timestamp - timedelta(days=self.config["pattern_lookback_days"])
        hours = [
            self._local(e.timestamp).hour
            for e in context.recent_events
            if e.event_type == SecurityEventType.LOGIN_SUCCESS.value
            and e.timestamp >= cutoff
            and e.user_id == context.user_id
        ]
        if len(hours) < 5:
            return None
        return abs(local.hour - sum(hours) / len(hours))

    def validate(self) -> bool:
        c = self.config
        try:
            ZoneInfo(c["timezone"])
            hours = c["allowed_hours"]
            return (
                0 <= hours["start"] <= 23
                and 0 <= hours["end"] <= 23
                and hours["start"] < hours["end"]
                and isinstance(c["allowed_days"], list)
                and all(0 <= d <= 6 for d in c["allowed_days"])
            )
        except (KeyError, TypeError, ValueError, ZoneInfoNotFoundError):
            return False

    def get_description(self) -> str:
        days = ", ".join(_DAY_NAMES[d] for d in self.config["allowed_days"])
        hours = self.config["allowed_hours"]
        return (
            f"Detects logins outside business hours ({hours['start']}:00-{hours['end']}:00) "
            f"or on non-business days (allowed: {days})"
        )
