"""
Datei: backend/main.py

Zweck:
- Haupt-Einstiegspunkt der Anwendung
- Router-Registrierung
- Middleware-Konfiguration
- Startup (Logging, Schema, RBAC- und Regel-Seed, Regel-Registry)

Start:
    uvicorn main:app --app-dir backend
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import config
from app.alert_dispatch import dispatcher as alert_dispatcher
from app.db import SessionLocal, init_db
from app.logging_config import get_logger, setup_logging
from app.rbac import seed_rbac
from app.rule_engine import engine as rule_engine, seed_threat_rules
from middleware import RequestContextMiddleware, SecurityHeadersMiddleware

logger = get_logger(__name__)


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: Logging, DB-Schema, RBAC- und Regel-Seed, Regel-Registry laden.
    Shutdown: eingereihte Alert-Zustellungen abwarten (begrenzt).
    """
    setup_logging(config.LOG_LEVEL, config.LOG_DIR, config.LOG_JSON)
    init_db()

    with SessionLocal() as db:
        seed_rbac(db)
        seeded = seed_threat_rules(db)
        loaded = rule_engine.reload(db)

    logger.info(
        "backend_started",
        demo_mode=config.DEMO_MODE,
        threat_rule_preset=config.THREAT_RULE_PRESET,
        rules_seeded=seeded,
        rules_loaded=loaded,
        alerts_enabled=config.SECURITY_ALERTS_ENABLED,
    )
    yield
    drained = alert_dispatcher.drain(
        timeout=config.ALERT_WEBHOOK_TIMEOUT_SECONDS * max(1, config.ALERT_RETRY_MAX_ATTEMPTS)
    )
    if not drained:
        logger.warning("alert_dispatch_pending_on_shutdown")
    logger.info("backend_stopped")


# =============================================================================
# App Initialisierung
# =============================================================================

app = FastAPI(
    title="Security Audit & Alert API",
    version="1.0.0",
    description="Login-Überwachung, Hash-verkettetes Security-Log, Threat-Regeln und Alert-Korrelation",
    lifespan=lifespan,
    debug=config.DEBUG,
)


# =============================================================================
# Middleware (zuletzt hinzugefügt = äusserste Schicht)
# =============================================================================

if config.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware)


# =============================================================================
# Router Registration
# =============================================================================

from routers import alerts, auth_router, health, security, threat_rules  # noqa: E402

app.include_router(health.router)
app.include_router(auth_router.router)
app.include_router(security.router)
app.include_router(alerts.router)
app.include_router(threat_rules.router)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Loggt unbehandelte Exceptions mit error_id. Details nur bei DASHBOARD_DEBUG=1.
    """
    error_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        error_id=error_id,
        path=request.url.path,
        method=request.method,
        exc_info=exc,
    )
    content = {"detail": "Internal server error", "error_id": error_id}
    if config.DEBUG:
        content["error"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=content)
