from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request, session
from sqlalchemy import or_
from werkzeug.security import check_password_hash

from app.botconsole.api import fail, json_body, ok
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.models import User
from app.botconsole.security import ensure_csrf_token
from app.botconsole.utils import clean_str

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds

_UNAUTHENTICATED_PREFIXES = ("/health", "/healthz", "/api/robot/callback")


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    if request.path.startswith(_UNAUTHENTICATED_PREFIXES):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def _me_payload(user: User) -> dict:
    data = user.to_dict()
    data["permissions"] = user.permission_keys()
    return data


@bp.post("/login")
def login():
    payload = json_body() or request.form.to_dict()
    login_name = clean_str(payload.get("username") or payload.get("email")) or ""
    password = payload.get("password") or ""
    if not isinstance(password, str):
        password = ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return fail("Too many login attempts. Please wait 5 minutes.", 429)

    _record_attempt(ip)

    try:
        s = db_session()
        user = (
            s.query(User)
            .filter(or_(User.username == login_name, User.email == login_name.lower()))
            .one_or_none()
        )
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=login_name or None,
                reason="Invalid credentials",
                metadata={"login": login_name},
            )
            s.commit()
            return fail("Invalid credentials.", 401)

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        _login_attempts[ip].clear()
        user.last_login_at = datetime.utcnow()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return ok(_me_payload(user), csrf_token=ensure_csrf_token())
    except Exception:
        current_app.logger.exception("Login crashed (login=%s request_id=%s)", login_name, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return ok(None, message="Logged out")


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return fail("Authentication required", 401)
    return ok(_me_payload(user))


@bp.get("/csrf")
def csrf():
    return ok({"csrf_token": ensure_csrf_token()})
