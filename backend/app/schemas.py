"""
Pydantic-Modelle fuer API Requests.
Zentral gesammelt damit Router und Tests sie importieren koennen.
Antworten sind meist dicts aus den Services (x_to_dict).
"""
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from app.threat_rules import RecentEvent, RuleContext

Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]
RuleStatusValue = Literal["ACTIVE", "INACTIVE", "TESTING"]
AlertTypeValue = Literal[
    "ACCOUNT_LOCKED", "SUSPICIOUS_LOGIN", "BRUTE_FORCE_ATTEMPT", "MULTIPLE_FAILED_ATTEMPTS",
    "THREAT_RULE_MATCH", "ANOMALY_DETECTED", "POLICY_VIOLATION",
]


# --- Auth ---

class LoginRequest(BaseModel):
    """Login per E-Mail + Passwort. Im Demo-Modus alternativ nur user_id."""
    email: Optional[str] = Field(default=None, max_length=254)
    user_id: Optional[str] = Field(default=None, max_length=64)
    password: Optional[str] = Field(default=None, max_length=1024)


class LoginResponse(BaseModel):
    user_id: str
    token: str
    expires_in: int
    demo_mode: bool


# --- Alerts ---

class ManualAlertRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    severity: Severity = "MEDIUM"
    type: Optional[AlertTypeValue] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class ResolveAlertRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=5000)


class SuppressAlertRequest(BaseModel):
    until: Optional[datetime] = None  # Default: 24 h
    reason: Optional[str] = Field(default=None, max_length=1000)


class MergeCorrelationRequest(BaseModel):
    correlation_ids: list[str] = Field(min_length=2)


class RetryDispatchRequest(BaseModel):
    since: Optional[datetime] = None


# --- Threat-Regeln ---

class ThreatRuleCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    status: Optional[RuleStatusValue] = None
    severity: Optional[Severity] = None
    config: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class ThreatRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    status: Optional[RuleStatusValue] = None
    severity: Optional[Severity] = None
    config: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None


class RecentEventIn(BaseModel):
    event_type: str
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    success: Optional[bool] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RuleContextIn(BaseModel):
    """Kontext für den Trockenlauf einer Regel (POST /api/threat-rules/test)."""
    event_type: str = "LOGIN_FAILED"
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    recent_events: list[RecentEventIn] = Field(default_factory=list)

    def to_context(self) -> RuleContext:
        return RuleContext(
            event_type=self.event_type,
            timestamp=_aware(self.timestamp) if self.timestamp else datetime.now(timezone.utc),
            user_id=self.user_id,
            email=self.email,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            session_id=self.session_id,
            metadata=dict(self.metadata),
            recent_events=[
                RecentEvent(
                    event_type=e.event_type,
                    timestamp=_aware(e.timestamp),
                    ip_address=e.ip_address,
                    user_agent=e.user_agent,
                    user_id=e.user_id,
                    email=e.email,
                    success=e.success,
                    metadata=dict(e.metadata),
                )
                for e in self.recent_events
            ],
        )


class RuleTestRequest(BaseModel):
    rule_id: str
    config: Optional[dict[str, Any]] = None
    severity: Optional[Severity] = None
    context: RuleContextIn


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
