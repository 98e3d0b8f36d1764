"""
Datei: backend/app/rbac.py

Zweck:
- Rollen- und Rechtekatalog des Security-Backends.
- Seeding der Systemrollen und Default-User.
- FastAPI-Dependency `require_permission` für die Router.

Hinweis:
- Sicherheitsrelevante Checks (RBAC/Permissions) werden serverseitig erzwungen.
- Rollen gelten global, es gibt keine Mandanten- oder Bereichsbindung.
"""


from __future__ import annotations

from typing import Optional, Set

from fastapi import Depends, HTTPException, Request
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.db import SessionLocal
from app.enums import LogSeverity, SecurityEventType
from app.logging_config import audit_log, get_logger
from app.models import (
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
)
from app.security_log import log_security_event
from app.timeutil import utc_now_iso

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Catalog (system roles + permissions)
# -----------------------------------------------------------------------------

PERMISSIONS: dict[str, str] = {
    # Security-Log, Login-Versuche, Metriken
    "security:read": "Security-Log, Login-Versuche und Metriken lesen",
    "security:write": "Checkpoints setzen, Accounts entsperren",

    # Alerts
    "alerts:read": "Alerts, Korrelationen und Engine-Metriken lesen",
    "alerts:write": "Alerts anlegen, quittieren, auflösen, unterdrücken",

    # Threat-Regeln
    "rules:read": "Threat-Regeln und Statistiken lesen",
    "rules:write": "Threat-Regeln anlegen, ändern, testen, neu laden",

    # Admin
    "admin:write": "Administrative Wartung (Log-Bereinigung)",
}

ROLES: dict[str, dict[str, object]] = {
    "viewer": {
        "description": "Nur lesen (Security-Log + Alerts)",
        "perms": {"security:read", "alerts:read"},
    },
    "analyst": {
        "description": "Security-Analyst: lesen + Alerts bearbeiten",
        "perms": {"security:read", "alerts:read", "alerts:write", "rules:read"},
    },
    "security_admin": {
        "description": "Security-Admin: Analyst + Regeln + Entsperren",
        "perms": {
            "security:read", "security:write",
            "alerts:read", "alerts:write",
            "rules:read", "rules:write",
        },
    },
    "system_admin": {
        "description": "System Admin: alle Berechtigungen",
        "perms": set(PERMISSIONS.keys()),
    },
}

DEFAULT_USERS: dict[str, dict[str, object]] = {
    "admin": {"display_name": "Initial Admin", "email": "admin@localhost", "roles": ["system_admin"]},
    "demo": {"display_name": "Demo User", "email": "demo@localhost", "roles": ["viewer"]},
    "analyst1": {"display_name": "Analyst 1", "email": "analyst1@localhost", "roles": ["analyst"]},
    "secadmin1": {"display_name": "Security Admin 1", "email": "secadmin1@localhost", "roles": ["security_admin"]},
}

# -----------------------------------------------------------------------------
# Seeding
# -----------------------------------------------------------------------------

def seed_rbac(db: Session) -> None:
    """Legt Permissions, Systemrollen und Default-User an (idempotent)."""
    # permissions
    for pid, desc in PERMISSIONS.items():
        if db.get(Permission, pid) is None:
            db.add(Permission(perm_id=pid, description=desc, is_system=True))
    db.commit()

    # roles
    for rid, meta in ROLES.items():
        if db.get(Role, rid) is None:
            db.add(Role(role_id=rid, description=str(meta.get("description") or ""), is_system=True))
    db.commit()

    # Systemrollen: Mapping entspricht immer exakt dem Katalog
    for rid, meta in ROLES.items():
        perms: Set[str] = set(meta.get("perms") or set())
        db.execute(delete(RolePermission).where(RolePermission.role_id == rid))
        for pid in perms:
            db.add(RolePermission(role_id=rid, perm_id=pid))
    db.commit()

    # default users + assignments
    for uid, meta in DEFAULT_USERS.items():
        if db.get(User, uid) is None:
            db.add(User(
                user_id=uid,
                display_name=meta.get("display_name"),
                email=meta.get("email"),
                is_active=True,
                created_at=utc_now_iso(),
            ))
    db.commit()

    for uid, meta in DEFAULT_USERS.items():
        for rid in meta.get("roles", []):
            if db.get(UserRole, (uid, rid)) is None:
                db.add(UserRole(user_id=uid, role_id=rid, created_at=utc_now_iso(), created_by="seed"))
    db.commit()
    logger.info(f"RBAC geseeded: {len(PERMISSIONS)} Permissions, {len(ROLES)} Rollen")

# -----------------------------------------------------------------------------
# Resolution
# -----------------------------------------------------------------------------

def ensure_user_exists(db: Session, user_id: str) -> User:
    """Ensures user exists. In demo mode: auto-creates with viewer role.
    In production (DEMO_MODE=false): rejects unknown users."""
    from app.config import DEMO_MODE
    u = db.get(User, user_id)
    if u is None:
        if not DEMO_MODE:
            raise HTTPException(status_code=403, detail=f"Unknown user: {user_id}. Contact admin.")
        # Demo-only: auto-create with minimal permissions
        u = User(user_id=user_id, display_name=None, is_active=True, created_at=utc_now_iso())
        db.add(u)
        db.commit()
        db.refresh(u)
        if db.get(UserRole, (user_id, "viewer")) is None:
            db.add(UserRole(user_id=user_id, role_id="viewer", created_at=utc_now_iso(), created_by="auto"))
            db.commit()
        audit_log("USER_AUTO_CREATED", user_id, {"role": "viewer"})
    return u


def find_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.execute(select(User).where(User.email == email)).scalars().first()


def resolve_permissions(db: Session, *, user_id: str) -> tuple[Set[str], Set[str]]:
    """Rollen und daraus abgeleitete Permissions eines Users."""
    roles = set(
        db.execute(select(UserRole.role_id).where(UserRole.user_id == user_id)).scalars().all()
    )
    if not roles:
        return set(), set()
    perms = set(
        db.execute(
            select(RolePermission.perm_id).where(RolePermission.role_id.in_(roles))
        ).scalars().all()
    )
    return roles, perms


def require_permission(permission: str):
    """FastAPI dependency factory: 403 wenn dem User `permission` fehlt."""
    # Lazy import, app.auth importiert dieses Modul
    from app.auth import get_auth_context

    def _dep(request: Request, ctx=Depends(get_auth_context)):
        if permission not in ctx.permissions:
            logger.warning(f"Permission verweigert: {permission}", user_id=ctx.user_id)
            with SessionLocal() as db:
                log_security_event(
                    db,
                    SecurityEventType.PERMISSION_DENIED,
                    user_id=ctx.user_id,
                    ip_address=request.client.host if request.client else None,
                    severity=LogSeverity.WARNING,
                    metadata={"permission": permission, "path": request.url.path},
                )
            raise HTTPException(status_code=403, detail=f"Missing permission: {permission}")
        return ctx

    return _dep
