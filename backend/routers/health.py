"""
Health-Check-Endpoints (ohne Auth).

- /health          : Liveness, schnell
- /health/ready    : Readiness, Datenbank erreichbar
- /health/detailed : System-, DB- und Ressourcen-Infos
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from app.db import SessionLocal, engine
from app.health import get_basic_health, get_detailed_health, is_ready

router = APIRouter(tags=["health"])


@router.get("/health")
def health_check():
    return get_basic_health()


@router.get("/health/ready")
def readiness_check():
    if not is_ready(engine):
        raise HTTPException(status_code=503, detail="Service not ready")
    return {"status": "ready"}


@router.get("/health/detailed")
def detailed_health_check():
    with SessionLocal() as db:
        return get_detailed_health(db, engine)
