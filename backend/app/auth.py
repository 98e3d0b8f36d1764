"""
backend/app/auth.py

Authentifizierung und Identitätsauflösung.

MODI:
  1) Token-Modus:
     Client erhält beim Login (/api/auth/login) einen signierten Token.
     Token wird als Bearer-Header oder HttpOnly-Cookie übermittelt.

  2) Demo-Modus (DASHBOARD_ALLOW_DEMO_AUTH=1):
     Zusätzlich wird der X-User-Id-Header akzeptiert; ohne jede Identität
     wird der User "demo" verwendet.

SICHERHEITSREGEL:
  Im Produktionsmodus (DEMO_MODE=False) werden X-User-Id-Header ohne Token
  mit 401 abgewiesen und unbekannte User nie auto-erstellt.

Passwörter werden mit Argon2 (argon2-cffi) gehasht.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional, Set

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import Cookie, Header, HTTPException

from app import config
from app.db import SessionLocal
from app.logging_config import get_logger
from app.rbac import ensure_user_exists, resolve_permissions

logger = get_logger(__name__)

SESSION_COOKIE_NAME = "security_session"

# ── Passwörter ───────────────────────────────────────────────────────

_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: Optional[str], password: Optional[str]) -> bool:
    """True wenn `password` zum Argon2-Hash passt. Leere Werte passen nie."""
    if not password_hash or not password:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


# ── Token-Konfiguration ──────────────────────────────────────────────

_demo_key: Optional[bytes] = None


def _get_signing_key() -> bytes:
    """Gibt den HMAC-Signing-Key zurück.
    Ohne SECRET_KEY: einmalig pro Prozess ein zufälliger Key
    (Tokens überleben einen Restart dann nicht).
    """
    global _demo_key
    if config.SECRET_KEY and len(config.SECRET_KEY) >= 16:
        return config.SECRET_KEY.encode()
    if _demo_key is None:
        _demo_key = os.urandom(32)
    return _demo_key


TOKEN_TTL_SECONDS = 8 * 3600  # 8 Stunden

# ── Widerrufene Tokens (in-memory, für Logout) ───────────────────────
# Signatur -> Ablaufzeit. Abgelaufene Tokens sind ohnehin ungültig und
# werden beim nächsten Widerruf entfernt. Resets bei Prozess-Neustart.

_revoked: dict[str, float] = {}
_revoked_lock = threading.Lock()


def _token_expiry(token: str) -> float:
    payload_b64 = token.split(".", 1)[0]
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
        return float(payload.get("exp", 0))
    except (ValueError, TypeError, AttributeError):
        return time.time() + TOKEN_TTL_SECONDS


def revoke_token(token: str) -> None:
    now = time.time()
    with _revoked_lock:
        for sig in [s for s, exp in _revoked.items() if exp < now]:
            del _revoked[sig]
        _revoked[token.rsplit(".", 1)[-1]] = _token_expiry(token)


def is_token_revoked(token: str) -> bool:
    with _revoked_lock:
        return token.rsplit(".", 1)[-1] in _revoked


def create_session_token(user_id: str) -> str:
    """Erstellt einen signierten Session-Token: base64url(payload).signature"""
    now = int(time.time())
    payload = json.dumps({
        "uid": user_id,
        "exp": now + TOKEN_TTL_SECONDS,
        "iat": now,
    }, separators=(",", ":"))
    payload_b64 = base64.urlsafe_b64encode(payload.encode()).rstrip(b"=").decode()
    sig = hmac.new(_get_signing_key(), payload_b64.encode(), hashlib.sha256).hexdigest()
    return f"{payload_b64}.{sig}"


def verify_session_token(token: str) -> str | None:
    """Verifiziert Token, gibt user_id zurück oder None bei Fehler."""
    if is_token_revoked(token):
        return None
    parts = token.split(".")
    if len(parts) != 2:
        return None
    payload_b64, sig = parts
    expected = hmac.new(_get_signing_key(), payload_b64.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        return None
    padding = "=" * (-len(payload_b64) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
    except (ValueError, TypeError):
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    return payload.get("uid")


def token_from_request(authorization: str | None, session_cookie: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return session_cookie or None


# ── AuthContext ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: Set[str]
    permissions: Set[str]


def _resolve_user_from_request(
    authorization: str | None,
    session_cookie: str | None,
    x_user_id: str | None,
) -> str | None:
    """
    Identitätsauflösung mit Priorität:
      1. Bearer Token im Authorization-Header
      2. Session-Cookie
      3. X-User-Id Header (nur DEMO_MODE)
    """
    if authorization and authorization.startswith("Bearer "):
        uid = verify_session_token(authorization[7:].strip())
        if uid:
            return uid
        raise HTTPException(status_code=401, detail="Session abgelaufen. Bitte neu anmelden.")

    if session_cookie:
        uid = verify_session_token(session_cookie)
        if uid:
            return uid
        raise HTTPException(status_code=401, detail="Session abgelaufen. Bitte neu anmelden.")

    if x_user_id:
        if not config.DEMO_MODE:
            raise HTTPException(
                status_code=401,
                detail="Direkte X-User-Id Header sind in Produktion nicht erlaubt. "
                       "Bitte über /api/auth/login authentifizieren."
            )
        return x_user_id.strip() or None

    return None


def get_auth_context(
    authorization: str | None = Header(default=None, alias="Authorization"),
    session_cookie: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
) -> AuthContext:
    """Identity-Auflösung mit Token-Prüfung, RBAC-Lookup."""
    user_id = _resolve_user_from_request(authorization, session_cookie, x_user_id)

    if user_id is None:
        if config.DEMO_MODE:
            user_id = "demo"
        else:
            raise HTTPException(
                status_code=401,
                detail="Nicht authentifiziert. Bitte über /api/auth/login anmelden."
            )

    with SessionLocal() as db:
        u = ensure_user_exists(db, user_id)
        if not u.is_active:
            raise HTTPException(status_code=403, detail="User deaktiviert")
        roles, perms = resolve_permissions(db, user_id=user_id)

    return AuthContext(user_id=user_id, roles=roles, permissions=perms)
