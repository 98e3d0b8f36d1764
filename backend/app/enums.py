"""
Aufzählungen des Security-Subsystems.

Alle Enums erben von `str`, damit sie 1:1 als String in der DB landen und
in Pydantic-Responses als Klartext erscheinen.
"""
from __future__ import annotations

from enum import Enum


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    SESSION_ACTIVITY = "SESSION_ACTIVITY"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ALERT_ESCALATED = "ALERT_ESCALATED"
    THREAT_ACTION = "THREAT_ACTION"
    SYSTEM_CHECKPOINT = "SYSTEM_CHECKPOINT"


class LogSeverity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ThreatSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


SEVERITY_ORDER: list[str] = [
    ThreatSeverity.LOW.value,
    ThreatSeverity.MEDIUM.value,
    ThreatSeverity.HIGH.value,
    ThreatSeverity.CRITICAL.value,
]


def increase_severity(severity: str) -> str:
    """Eine Stufe höher, bei CRITICAL bleibt es CRITICAL."""
    try:
        idx = SEVERITY_ORDER.index(str(severity))
    except ValueError:
        return ThreatSeverity.MEDIUM.value
    return SEVERITY_ORDER[min(idx + 1, len(SEVERITY_ORDER) - 1)]


class AlertType(str, Enum):
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SUSPICIOUS_LOGIN = "SUSPICIOUS_LOGIN"
    BRUTE_FORCE_ATTEMPT = "BRUTE_FORCE_ATTEMPT"
    MULTIPLE_FAILED_ATTEMPTS = "MULTIPLE_FAILED_ATTEMPTS"
    THREAT_RULE_MATCH = "THREAT_RULE_MATCH"
    ANOMALY_DETECTED = "ANOMALY_DETECTED"
    POLICY_VIOLATION = "POLICY_VIOLATION"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DISPATCHED = "DISPATCHED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"
    SUPPRESSED = "SUPPRESSED"


class RuleStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    TESTING = "TESTING"


class ConditionType(str, Enum):
    THRESHOLD = "THRESHOLD"
    PATTERN = "PATTERN"
    TIME_BASED = "TIME_BASED"
    GEO_BASED = "GEO_BASED"


class ThreatAction(str, Enum):
    BLOCK_IP = "BLOCK_IP"
    REQUIRE_2FA = "REQUIRE_2FA"
    INVALIDATE_SESSIONS = "INVALIDATE_SESSIONS"
    INCREASE_MONITORING = "INCREASE_MONITORING"
