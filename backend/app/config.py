"""
Zentrale Konfiguration: Environment-Variablen, Schwellwerte, Startup-Checks.

ARCHITEKTUR-REGEL:
  Alle Sicherheits-Schwellwerte (Lockout, Rate-Limits, Korrelation,
  Deduplizierung, Dispatch) werden hier EINMAL gelesen. Services lesen
  keine Env-Vars selbst, sondern importieren die Konstanten.
"""
from __future__ import annotations
import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

# ── dotenv laden ─────────────────────────────────────────────────────
# Muss ZUERST geschehen, bevor os.getenv aufgerufen wird.
# Lädt .env aus dem Projektroot (zwei Ebenen über app/).
_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
if _ENV_FILE.exists():
    load_dotenv(dotenv_path=_ENV_FILE, override=False)

# ── Environment ──────────────────────────────────────────────────────
# HINWEIS: Env-Var-Namen sind kanonisch mit DASHBOARD_-Prefix.
# Für Rückwärtskompatibilität werden auch die Kurzformen (ohne Prefix) akzeptiert.

def _env_bool(primary: str, fallback: str | None = None, default: str = "0") -> bool:
    """Liest eine bool-Env-Var mit optionalem Fallback-Namen."""
    val = os.getenv(primary)
    if val is None and fallback:
        val = os.getenv(fallback)
    if val is None:
        val = default
    return val.lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        warnings.warn(f"{name}={raw!r} ist keine Ganzzahl, verwende {default}", stacklevel=2)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        warnings.warn(f"{name}={raw!r} ist keine Zahl, verwende {default}", stacklevel=2)
        return default


DEBUG = _env_bool("DASHBOARD_DEBUG", "DEBUG", "0")
DEMO_MODE = _env_bool("DASHBOARD_ALLOW_DEMO_AUTH", "ALLOW_DEMO_AUTH", "1")
SECURE_COOKIES = _env_bool("DASHBOARD_SECURE_COOKIES", default="0")

# SECRET_KEY: beide Varianten akzeptieren
SECRET_KEY = os.getenv("SECRET_KEY", os.getenv("DASHBOARD_SECRET_KEY", ""))

LOG_LEVEL = os.getenv("DASHBOARD_LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("DASHBOARD_LOG_DIR", "logs")
LOG_JSON = _env_bool("DASHBOARD_LOG_JSON", default="0")

# Kommagetrennte Origins; leer = keine Cross-Origin-Requests
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

# ── Login-Versuche / Lockout ─────────────────────────────────────────
LOGIN_MAX_ATTEMPTS = _env_int("LOGIN_MAX_ATTEMPTS", 5)
LOGIN_WINDOW_MINUTES = _env_int("LOGIN_WINDOW_MINUTES", 15)
LOGIN_LOCKOUT_MINUTES = _env_float("LOGIN_LOCKOUT_MINUTES", 15.0)
IP_RATE_LIMIT_ATTEMPTS = _env_int("IP_RATE_LIMIT_ATTEMPTS", 20)
IP_RATE_LIMIT_MINUTES = _env_int("IP_RATE_LIMIT_MINUTES", 60)

# Risiko-Score ab dem ein Login als verdächtig gilt (strikt grösser)
SUSPICIOUS_LOGIN_RISK_SCORE = _env_int("SUSPICIOUS_LOGIN_RISK_SCORE", 70)
MULTIPLE_FAILED_ATTEMPTS_WARNING = _env_int("MULTIPLE_FAILED_ATTEMPTS_WARNING", 3)

# ── Security-Log ─────────────────────────────────────────────────────
SECURITY_LOG_RETENTION_DAYS = _env_int("SECURITY_LOG_RETENTION_DAYS", 90)

# Zeitzone für Tageszeit-Heuristiken (ungewöhnliche Login-Zeiten)
SECURITY_TIMEZONE = os.getenv("SECURITY_TIMEZONE", "Europe/Berlin")

# ── Alert-Korrelation / Deduplizierung ───────────────────────────────
ALERT_CORRELATION_WINDOW_MS = _env_int("ALERT_CORRELATION_WINDOW_MS", 3_600_000)
ALERT_MIN_CORRELATION = _env_int("ALERT_MIN_CORRELATION", 3)
ALERT_AUTO_ESCALATE = _env_bool("ALERT_AUTO_ESCALATE", default="1")
ALERT_ESCALATION_CRITICAL = _env_int("ALERT_ESCALATION_CRITICAL", 2)
ALERT_ESCALATION_HIGH = _env_int("ALERT_ESCALATION_HIGH", 3)
ALERT_ESCALATION_TOTAL = _env_int("ALERT_ESCALATION_TOTAL", 5)
ALERT_DEDUP_WINDOW_MS = _env_int("ALERT_DEDUP_WINDOW_MS", 300_000)

# ── Alert-Dispatch ───────────────────────────────────────────────────
SECURITY_ALERTS_ENABLED = _env_bool("SECURITY_ALERTS_ENABLED", default="0")
SECURITY_ALERT_WEBHOOK_URL = os.getenv("SECURITY_ALERT_WEBHOOK_URL", "").strip() or None
SECURITY_ALERT_AUTH_TOKEN = os.getenv("SECURITY_ALERT_AUTH_TOKEN", "").strip() or None
DISPATCH_LOW_SEVERITY_ALERTS = _env_bool("DISPATCH_LOW_SEVERITY_ALERTS", default="0")
MAX_ALERT_DISPATCHES_PER_HOUR = _env_int("MAX_ALERT_DISPATCHES_PER_HOUR", 10)
ALERT_RETRY_MAX_ATTEMPTS = _env_int("ALERT_RETRY_MAX_ATTEMPTS", 3)
ALERT_RETRY_BACKOFF = _env_float("ALERT_RETRY_BACKOFF", 2.0)
ALERT_RETRY_MAX_BACKOFF_SECONDS = _env_float("ALERT_RETRY_MAX_BACKOFF", 30.0)
ALERT_WEBHOOK_TIMEOUT_SECONDS = _env_float("ALERT_WEBHOOK_TIMEOUT", 5.0)
ALERT_DISPATCH_WORKERS = _env_int("ALERT_DISPATCH_WORKERS", 2)

# ── Threat-Regeln ────────────────────────────────────────────────────
THREAT_RULE_PRESET = os.getenv("THREAT_RULE_PRESET", "standard").strip() or "standard"


# ── Startup-Warnungen ────────────────────────────────────────────────
if not SECRET_KEY or SECRET_KEY in ("change_this_in_production_to_random_string", "CHANGE_THIS_TO_A_RANDOM_STRING_IN_PRODUCTION"):
    warnings.warn(
        "SECRET_KEY nicht gesetzt oder Default! "
        "Im Demo-Modus wird ein temporärer Key verwendet. "
        "Für Produktion: SECRET_KEY=<random 64 hex> in .env setzen.",
        stacklevel=1,
    )
if DEMO_MODE:
    warnings.warn(
        "DEMO-MODUS aktiv (ALLOW_DEMO_AUTH=1). "
        "Authentifizierung ist vereinfacht. Nur für Demo/Pilot!",
        stacklevel=1,
    )
if SECURITY_ALERTS_ENABLED and not SECURITY_ALERT_WEBHOOK_URL:
    warnings.warn(
        "SECURITY_ALERTS_ENABLED=1 aber SECURITY_ALERT_WEBHOOK_URL fehlt. "
        "Alerts werden nur ins Security-Log geschrieben.",
        stacklevel=1,
    )
