"""Verdächtige User-Agents: Scanner, Bots, Skript-Clients, kaputte Formate."""
from __future__ import annotations

import re
from datetime import timedelta
from typing import Optional

from app.enums import ConditionType, SecurityEventType, ThreatAction, ThreatSeverity
from app.threat_rules.base import NO_MATCH, RuleContext, RuleResult, ThreatRule

SECURITY_SCANNERS = {"nikto", "nmap", "masscan", "nessus", "burp", "zap", "sqlmap", "acunetix"}
BOT_PATTERNS = {"bot", "crawler", "spider", "scraper"}

_BROWSER_FORMATS = [
    re.compile(r"Mozilla/\d+\.\d+"),
    re.compile(r"Chrome/\d+"),
    re.compile(r"Safari/\d+"),
    re.compile(r"Firefox/\d+"),
    re.compile(r"Edge/\d+"),
    re.compile(r"Opera/\d+"),
]

_RELEVANT = (
    SecurityEventType.LOGIN_SUCCESS.value,
    SecurityEventType.LOGIN_FAILED.value,
    SecurityEventType.SESSION_ACTIVITY.value,
)


def has_browser_format(user_agent: str) -> bool:
    return any(p.search(user_agent) for p in _BROWSER_FORMATS)


class SuspiciousUserAgentRule(ThreatRule):
    rule_id = "suspicious-user-agent-detection"
    name = "Suspicious User Agent Detection"
    description = "Detects suspicious or malicious user agents"
    default_severity = ThreatSeverity.MEDIUM.value
    condition_type = ConditionType.PATTERN.value
    default_tags = ("user-agent", "bot-detection", "authentication")
    default_config = {
        "patterns": [
            # Bots / Skript-Clients
            "bot", "crawler", "spider", "scraper", "wget", "curl", "python",
            "java/", "perl/", "ruby/", "go-http-client", "okhttp", "axios",
            "postman", "insomnia", "thunder client",
            # Security-Scanner
            "nikto", "nmap", "masscan", "nessus", "openvas", "qualys", "burp",
            "zap", "sqlmap", "havij", "acunetix",
            # Headless
            "headless", "phantomjs", "slimerjs", "puppeteer", "playwright",
            # Sonstige
            "libwww-perl", "lwp-trivial", "php/", "winhttp", "httpunit",
        ],
        "match_type": "any",
        "lookback_minutes": 60,
        "case_sensitive": False,
        "whitelist": [
            "googlebot", "bingbot", "slackbot", "twitterbot",
            "facebookexternalhit", "linkedinbot", "whatsapp", "telegram",
        ],
        "suspicious_characteristics": {
            "missing_user_agent": True,
            "too_short": 10,
            "too_long": 500,
            "no_spaces": True,
            "invalid_format": True,
        },
    }

    def evaluate(self, context: RuleContext) -> RuleResult:
        if context.event_type not in _RELEVANT:
            return NO_MATCH

        analysis = self.analyze_user_agent(context.user_agent)
        if not analysis["suspicious"]:
            return NO_MATCH

        behavior = self._analyze_behavior(context)
        scanner = any(p.lower() in SECURITY_SCANNERS for p in analysis["matched_patterns"])
        bot = any(p.lower() in BOT_PATTERNS for p in analysis["matched_patterns"])

        total = analysis["score"] + behavior["behavior_score"]
        if scanner:
            severity = ThreatSeverity.CRITICAL.value
        elif bot:
            severity = ThreatSeverity.HIGH.value if total > 50 else ThreatSeverity.MEDIUM.value
        elif total > 80:
            severity = ThreatSeverity.HIGH.value
        elif total > 50:
            severity = ThreatSeverity.MEDIUM.value
        else:
            severity = ThreatSeverity.LOW.value

        if scanner:
            actions = [ThreatAction.BLOCK_IP.value, ThreatAction.INVALIDATE_SESSIONS.value]
        elif behavior["failed_login_count"] > 5:
            actions = [ThreatAction.BLOCK_IP.value]
        else:
            actions = [ThreatAction.INCREASE_MONITORING.value]
            if behavior["activity_rate"] > 2:
                actions.append(ThreatAction.REQUIRE_2FA.value)

        return self.match_result(
            severity=severity,
            score=analysis["score"] + min(behavior["behavior_score"] * 0.5, 30),
            reason=self._reason(analysis),
            evidence={
                "user_agent": context.user_agent or "Missing",
                "suspicious_patterns": analysis["matched_patterns"],
                "characteristics": analysis["characteristics"],
                **behavior,
            },
            actions=actions,
        )

    def analyze_user_agent(self, user_agent: Optional[str]) -> dict:
        analysis = {"suspicious": False, "matched_patterns": [], "characteristics": [], "score": 0}
        chars = self.config["suspicious_characteristics"]

        if not user_agent:
            if chars.get("missing_user_agent"):
                analysis.update(suspicious=True, score=40)
                analysis["characteristics"].append("missing_user_agent")
            return analysis

        case_sensitive = self.config["case_sensitive"]
        haystack = user_agent if case_sensitive else user_agent.lower()

        if any(w.lower() in haystack for w in self.config["whitelist"]):
            return analysis

        score = 0
        for pattern in self.config["patterns"]:
            needle = pattern if case_sensitive else pattern.lower()
            if needle in haystack:
                analysis["matched_patterns"].append(pattern)
                if pattern.lower() in SECURITY_SCANNERS:
                    score += 50
                elif pattern.lower() in BOT_PATTERNS:
                    score += 30
                else:
                    score += 20

        if chars.get("too_short") and len(user_agent) < chars["too_short"]:
            analysis["characteristics"].append("too_short")
            score += 15
        if chars.get("too_long") and len(user_agent) > chars["too_long"]:
            analysis["characteristics"].append("too_long")
            score += 10
        if chars.get("no_spaces") and " " not in user_agent:
            analysis["characteristics"].append("no_spaces")
            score += 20
        if chars.get("invalid_format") and not has_browser_format(user_agent):
            analysis["characteristics"].append("invalid_format")
            score += 25

        analysis["suspicious"] = bool(analysis["matched_patterns"] or analysis["characteristics"])
        analysis["score"] = min(score, 100)
        return analysis

    def _analyze_behavior(self, context: RuleContext) -> dict:
        lookback = self.config["lookback_minutes"]
        cutoff = context.timestamp - timedelta(minutes=lookback)
        same_ua = [
            e for e in context.recent_events
            if e.timestamp >= cutoff and e.user_agent == context.user_agent
        ]
        failed = sum(1 for e in same_ua if e.event_type == SecurityEventType.LOGIN_FAILED.value)
        success = sum(1 for e in same_ua if e.event_type == SecurityEventType.LOGIN_SUCCESS.value)
        total = len(same_ua) + 1

        score = 0
        if failed > 5:
            score += 30
        if total > 10 and lookback <= 5:
            score += 25
        if failed > 3 and success == 0:
            score += 20

        return {
            "behavior_score": score,
            "recent_activity_count": total,
            "failed_login_count": failed,
            "successful_login_count": success,
            "activity_rate": total / lookback,
        }

    @staticmethod
    def _reason(analysis: dict) -> str:
        parts = []
        chars = analysis["characteristics"]
        if "missing_user_agent" in chars:
            parts.append("Missing user agent")
        elif analysis["matched_patterns"]:
            parts.append(
                "Suspicious user agent patterns detected: " + ", ".join(analysis["matched_patterns"])
            )
        rest = [c for c in chars if c != "missing_user_agent"]
        if rest:
            parts.append("Characteristics: " + ", ".join(rest))
        return "; ".join(parts)

    def validate(self) -> bool:
        c = self.config
        return (
            isinstance(c.get("patterns"), list)
            and len(c["patterns"]) > 0
            and c.get("match_type") in ("any", "all")
            and isinstance(c.get("lookback_minutes"), (int, float))
            and c["lookback_minutes"] > 0
        )

    def get_description(self) -> str:
        return (
            f"Detects {len(self.config['patterns'])} known bot, scanner and script client "
            "patterns as well as malformed user agents"
        )
