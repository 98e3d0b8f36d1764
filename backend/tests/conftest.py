"""
Shared Fixtures fuer die gesamte Test-Suite.

Architektur:
  - App-DB: temporaere SQLite-Datei (TestClient, Lifespan einmalig)
  - `db`: eigene In-Memory-DB pro Test fuer Service-Tests
  - Auth-Header-Factories fuer die Systemrollen (X-User-Id, Demo-Modus)
  - Dedup-Store und Engine-Metriken werden pro Test zurueckgesetzt

Konvention:
  - Fixtures die mit `_` beginnen sind intern
  - `client` ist der primaere TestClient (session-scoped fuer Performance)
  - `fresh_client` ist ein frischer Client pro Test (eigene Cookies, z.B. Login)
"""
from __future__ import annotations

import os
import secrets
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# ── sys.path: Tests muessen sowohl aus backend/ als auch aus Root funktionieren
_BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

# ── Env MUSS vor App-Import gesetzt werden ──────────────────────────────
_TMP_DIR = Path(tempfile.mkdtemp(prefix="security-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{(_TMP_DIR / 'test.db').as_posix()}"
os.environ["DASHBOARD_LOG_DIR"] = str(_TMP_DIR / "logs")
os.environ["DASHBOARD_ALLOW_DEMO_AUTH"] = "1"
os.environ["SECURITY_ALERTS_ENABLED"] = "0"
os.environ["THREAT_RULE_PRESET"] = "standard"
os.environ.setdefault("SECRET_KEY", "")

from app import models as _models  # noqa: E402,F401 – Tabellen registrieren
from app.alert_dedup import dedup  # noqa: E402
from app.alert_engine import alert_engine  # noqa: E402
from app.db import Base  # noqa: E402
from app.models import SecurityAlert, User  # noqa: E402
from app.timeutil import utc_now_iso  # noqa: E402
from main import app  # noqa: E402 – nach env setup


# ---------------------------------------------------------------------------
# Service-Tests: isolierte In-Memory-DB
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    """Frische Session auf einer leeren In-Memory-DB (pro Test)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def _reset_alert_state():
    """Prozess-Singletons duerfen nicht zwischen Tests lecken."""
    dedup.reset()
    alert_engine.reset_metrics()
    yield


@pytest.fixture
def make_user(db):
    """Factory: User in der Test-DB anlegen."""
    def _make(user_id: str, email: str | None = None, **fields: Any) -> User:
        u = User(
            user_id=user_id,
            email=email,
            is_active=fields.pop("is_active", True),
            created_at=utc_now_iso(),
            **fields,
        )
        db.add(u)
        db.commit()
        return u
    return _make


@pytest.fixture
def make_alert(db):
    """Factory: SecurityAlert direkt anlegen (ohne Pipeline)."""
    def _make(**fields: Any) -> SecurityAlert:
        now = fields.pop("created_at", None) or utc_now_iso()
        a = SecurityAlert(
            id=fields.pop("id", None) or str(uuid.uuid4()),
            type=fields.pop("type", "THREAT_RULE_MATCH"),
            severity=fields.pop("severity", "MEDIUM"),
            title=fields.pop("title", "Test alert"),
            description=fields.pop("description", "test"),
            fingerprint=fields.pop("fingerprint", None) or secrets.token_hex(8),
            status=fields.pop("status", "PENDING"),
            occurrence_count=1,
            first_seen=now,
            last_seen=now,
            dispatch_attempts=fields.pop("dispatch_attempts", 0),
            created_at=now,
            updated_at=now,
            **fields,
        )
        db.add(a)
        db.commit()
        return a
    return _make


# ---------------------------------------------------------------------------
# Session-scoped Client (einmalig, schnell)
# ---------------------------------------------------------------------------

@pytest.fixture(scope="session")
def client() -> TestClient:
    """TestClient mit persistenter Session. Startup wird einmalig ausgefuehrt."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def fresh_client() -> TestClient:
    """Frischer Client pro Test (eigene Cookie-Session)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


# ---------------------------------------------------------------------------
# Auth-Header-Factories
# ---------------------------------------------------------------------------

class AuthHeaders:
    """Factory fuer Demo-Auth-Headers (X-User-Id)."""

    def __call__(self, user: str = "demo", *, extra: dict[str, str] | None = None) -> dict[str, str]:
        h = {"X-User-Id": user, "Content-Type": "application/json"}
        if extra:
            h.update(extra)
        return h

    def admin(self) -> dict[str, str]:
        return self("admin")

    def security_admin(self) -> dict[str, str]:
        return self("secadmin1")

    def analyst(self) -> dict[str, str]:
        return self("analyst1")

    def viewer(self) -> dict[str, str]:
        return self("demo")

    def unknown(self) -> dict[str, str]:
        """Unbekannter User (auto-provisioned als viewer in demo mode)."""
        return self(f"unknown_{secrets.token_hex(4)}")


@pytest.fixture(scope="session")
def auth() -> AuthHeaders:
    return AuthHeaders()


@pytest.fixture(scope="session")
def admin_h(auth: AuthHeaders) -> dict[str, str]:
    return auth.admin()


@pytest.fixture(scope="session")
def secadmin_h(auth: AuthHeaders) -> dict[str, str]:
    return auth.security_admin()


@pytest.fixture(scope="session")
def analyst_h(auth: AuthHeaders) -> dict[str, str]:
    return auth.analyst()


@pytest.fixture(scope="session")
def viewer_h(auth: AuthHeaders) -> dict[str, str]:
    return auth.viewer()
