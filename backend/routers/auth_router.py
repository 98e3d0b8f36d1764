"""
/api/auth – Login / Logout / Status

Login-Ablauf:
  1. IP-Rate-Limit prüfen (429)
  2. Account-Sperre prüfen (423)
  3. Passwort prüfen (Argon2). Im Demo-Modus genügt für User ohne
     Passwort-Hash die User-ID bzw. E-Mail.
  4. Versuch aufzeichnen (Risiko-Score, Hash-Kette, Heuristiken, Threat-Regeln)
  5. Fehlschlag: Lockout prüfen (423) bzw. Warnung bei mehreren Fehlversuchen,
     sonst 401. Erfolg: Fehlversuche zurücksetzen, Token ausstellen.

Der Token wird als:
  a) JSON-Response (für SPA mit Bearer-Header)
  b) HttpOnly-Cookie (SameSite=Strict)
zurückgegeben.
"""
from __future__ import annotations

import re

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response
from sqlalchemy.orm import Session

from app import config
from app.auth import (
    SESSION_COOKIE_NAME,
    TOKEN_TTL_SECONDS,
    AuthContext,
    create_session_token,
    get_auth_context,
    revoke_token,
    token_from_request,
    verify_password,
)
from app.db import SessionLocal
from app.enums import SecurityEventType
from app.logging_config import get_logger
from app.login_attempts import (
    LoginAttemptData,
    check_and_update_lockout,
    check_ip_rate_limit,
    check_multiple_failed_attempts,
    count_failed_attempts,
    get_locked_until,
    is_account_locked,
    record_login_attempt,
    reset_failed_attempts,
)
from app.models import User
from app.rbac import find_user_by_email
from app.schemas import LoginRequest, LoginResponse
from app.security_log import log_security_event
from app.timeutil import utc_now_iso

logger = get_logger(__name__)

router = APIRouter()

_USER_ID_RE = re.compile(r"^[a-zA-Z0-9_.\-@]+$")


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _lookup_user(db: Session, body: LoginRequest) -> tuple[str, User | None]:
    """(Login-Kennung, User) aus E-Mail oder, im Demo-Modus, User-ID."""
    if body.email:
        email = body.email.strip().lower()
        return email, find_user_by_email(db, email)
    if body.user_id and config.DEMO_MODE:
        user_id = body.user_id.strip()
        if not _USER_ID_RE.match(user_id):
            raise HTTPException(status_code=400, detail="Ungültige User-ID (nur A-Z, 0-9, _, ., -, @)")
        user = db.get(User, user_id)
        return (user.email if user and user.email else user_id), user
    raise HTTPException(status_code=400, detail="E-Mail erforderlich")


def _credentials_ok(user: User | None, password: str | None) -> tuple[bool, str | None]:
    if user is None:
        return False, "unknown_user"
    if not user.is_active:
        return False, "user_inactive"
    if user.password_hash:
        if verify_password(user.password_hash, password):
            return True, None
        return False, "invalid_password"
    if config.DEMO_MODE:
        return True, None
    return False, "no_password_set"


@router.post("/api/auth/login", response_model=LoginResponse)
def login(body: LoginRequest, request: Request, response: Response):
    ip = _client_ip(request)
    user_agent = request.headers.get("user-agent")

    with SessionLocal() as db:
        if check_ip_rate_limit(db, ip):
            raise HTTPException(status_code=429, detail="Zu viele Login-Versuche von dieser IP.")

        login_id, user = _lookup_user(db, body)

        if is_account_locked(db, login_id):
            raise HTTPException(
                status_code=423,
                detail={"message": "Account gesperrt", "locked_until": get_locked_until(db, login_id)},
            )

        ok, reason = _credentials_ok(user, body.password)
        record_login_attempt(db, LoginAttemptData(
            email=login_id,
            success=ok,
            ip_address=ip,
            user_agent=user_agent,
            user_id=user.user_id if user else None,
            failure_reason=reason,
            metadata={"username": login_id},
        ))

        if not ok:
            status = check_and_update_lockout(db, login_id, ip_address=ip)
            if status.is_locked:
                raise HTTPException(
                    status_code=423,
                    detail={"message": "Account gesperrt", "locked_until": status.locked_until},
                )
            failed = count_failed_attempts(db, login_id)
            check_multiple_failed_attempts(
                db, login_id, user.user_id if user else None,
                failed, max(config.LOGIN_MAX_ATTEMPTS - failed, 0), ip,
            )
            raise HTTPException(status_code=401, detail="Ungültige Anmeldedaten")

        reset_failed_attempts(db, login_id)
        user.last_login_at = utc_now_iso()
        db.commit()
        user_id = user.user_id

    token = create_session_token(user_id)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        max_age=TOKEN_TTL_SECONDS,
        httponly=True,
        samesite="strict",
        secure=config.SECURE_COOKIES,
        path="/",
    )
    return LoginResponse(
        user_id=user_id,
        token=token,
        expires_in=TOKEN_TTL_SECONDS,
        demo_mode=config.DEMO_MODE,
    )


@router.post("/api/auth/logout")
def logout(
    request: Request,
    response: Response,
    authorization: str | None = Header(default=None, alias="Authorization"),
    session_cookie: str | None = Cookie(default=None, alias=SESSION_COOKIE_NAME),
    ctx: AuthContext = Depends(get_auth_context),
):
    """Löscht Session-Cookie und revoziert Token (Blacklist)."""
    token = token_from_request(authorization, session_cookie)
    if token:
        revoke_token(token)
    with SessionLocal() as db:
        log_security_event(
            db,
            SecurityEventType.LOGOUT,
            user_id=ctx.user_id,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    response.delete_cookie(key=SESSION_COOKIE_NAME, path="/", samesite="strict")
    return {"status": "logged_out"}


@router.get("/api/auth/status")
def auth_status(ctx: AuthContext = Depends(get_auth_context)):
    """Gibt aktuellen Auth-Status zurück (für Frontend-Initialisierung)."""
    return {
        "authenticated": True,
        "user_id": ctx.user_id,
        "roles": sorted(ctx.roles),
        "permissions": sorted(ctx.permissions),
        "demo_mode": config.DEMO_MODE,
    }
