import os
import re
from datetime import datetime

from flask import Blueprint, request
from sqlalchemy import func, or_
from werkzeug.security import generate_password_hash

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import database_reachable, db_session
from app.botconsole.models import AuditEvent, Role, SystemSetting, User
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, parse_bool, text_errors

bp = Blueprint("admin", __name__)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


def _is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


def _password_errors(payload: dict) -> list[str]:
    errors: list[str] = []
    password = payload.get("password") or ""
    confirm = payload.get("confirm_password")
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if confirm is not None and confirm != password:
        errors.append("Password confirmation does not match.")
    return errors


def _resolve_roles(s, role_keys) -> list[Role]:
    if role_keys is None:
        return []
    if not isinstance(role_keys, list):
        raise ApiError("roles must be a list of role keys.")
    roles = s.query(Role).filter(Role.key.in_(role_keys)).all() if role_keys else []
    unknown = sorted(set(role_keys) - {r.key for r in roles})
    if unknown:
        raise ApiError(f"Unknown roles: {', '.join(unknown)}")
    return roles


@bp.get("/")
@require_permission("admin.view")
def index():
    from app.botconsole.modules.alerts.models import AlertHistory
    from app.botconsole.modules.commands.models import RobotCommand
    from app.botconsole.modules.robots.models import Robot

    s = db_session()
    status = {
        "env": (os.environ.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
    }
    status["db_connected"], status["db_error"] = database_reachable(s)

    robots_by_status = dict(s.query(Robot.status, func.count(Robot.id)).group_by(Robot.status).all())
    status["robots"] = {
        "total": sum(robots_by_status.values()),
        "active": s.query(func.count(Robot.id)).filter(Robot.is_active.is_(True)).scalar() or 0,
        "by_status": robots_by_status,
    }
    status["unhandled_alerts"] = (
        s.query(func.count(AlertHistory.id)).filter(AlertHistory.is_handled.is_(False)).scalar() or 0
    )
    status["pending_commands"] = (
        s.query(func.count(RobotCommand.id)).filter(RobotCommand.status == "pending").scalar() or 0
    )
    return ok(status)


# ---------- Users ----------
@bp.get("/users")
@require_permission("users.manage")
def users_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(User)
    search = clean_str(request.args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.username.ilike(like), User.email.ilike(like)))
    is_active = parse_bool(request.args.get("is_active"))
    if is_active is not None:
        q = q.filter(User.is_active.is_(is_active))
    total = q.count()
    users = q.order_by(User.username.asc()).offset(offset).limit(limit).all()
    return ok([u.to_dict() for u in users], total=total)


@bp.post("/users")
@require_permission("users.manage")
def users_create():
    s = db_session()
    actor = current_user()
    payload = json_body()

    errors = text_errors(payload, "username", "email")
    username = clean_str(payload.get("username")) or ""
    email = (clean_str(payload.get("email")) or "").lower() or None
    if not _USERNAME_RE.match(username):
        errors.append("Username must be 3-64 characters of letters, digits, '_', '.', or '-'.")
    if email and not _is_valid_email(email):
        errors.append("Email is invalid.")
    errors.extend(_password_errors(payload))
    if errors:
        raise validation_failed(errors)

    if s.query(User).filter(User.username == username).one_or_none():
        raise ApiError("Username already exists.", 409)
    if email and s.query(User).filter(User.email == email).one_or_none():
        raise ApiError("Email already exists.", 409)

    roles = _resolve_roles(s, payload.get("roles"))
    user = User(
        username=username,
        email=email,
        password_hash=generate_password_hash(payload["password"]),
        is_active=parse_bool(payload.get("is_active"), True),
    )
    user.roles.extend(roles)
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": username, "roles": sorted(r.key for r in roles)},
    )
    s.commit()
    return ok(user.to_dict(), 201)


@bp.get("/users/<int:user_id>")
@require_permission("users.manage")
def users_get(user_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id, "User")
    data = user.to_dict()
    data["permissions"] = user.permission_keys()
    return ok(data)


@bp.put("/users/<int:user_id>")
@require_permission("users.manage")
def users_update(user_id: int):
    s = db_session()
    actor = current_user()
    user = get_or_404(s, User, user_id, "User")
    payload = json_body()
    changes: dict = {}

    if "email" in payload:
        if payload.get("email") is not None and not isinstance(payload.get("email"), str):
            raise ApiError("email must be a string.")
        email = (payload.get("email") or "").strip().lower() or None
        if email and not _is_valid_email(email):
            raise ApiError("Email is invalid.")
        if email and email != user.email:
            clash = s.query(User).filter(User.email == email, User.id != user.id).one_or_none()
            if clash:
                raise ApiError("Email already exists.", 409)
        if email != user.email:
            changes["email"] = {"old": user.email, "new": email}
            user.email = email

    if "is_active" in payload:
        is_active = parse_bool(payload.get("is_active"))
        if is_active is None:
            raise ApiError("is_active must be a boolean.")
        if user.id == actor.id and not is_active:
            raise ApiError("You cannot deactivate your own account.")
        if is_active != user.is_active:
            changes["is_active"] = {"old": user.is_active, "new": is_active}
            user.is_active = is_active

    if "roles" in payload:
        roles = _resolve_roles(s, payload.get("roles"))
        old_keys = sorted(r.key for r in user.roles)
        new_keys = sorted(r.key for r in roles)
        if old_keys != new_keys:
            if user.id == actor.id:
                raise ApiError("You cannot change your own roles.")
            changes["roles"] = {"old": old_keys, "new": new_keys}
            user.roles = roles

    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.update",
            entity_type="User",
            entity_id=str(user.id),
            reason=clean_str(payload.get("reason")),
            metadata={"changes": changes},
        )
        s.commit()
    return ok(user.to_dict())


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("users.manage")
def users_reset_password(user_id: int):
    s = db_session()
    actor = current_user()
    user = get_or_404(s, User, user_id, "User")
    payload = json_body()
    errors = _password_errors(payload)
    if errors:
        raise validation_failed(errors)
    user.password_hash = generate_password_hash(payload["password"])
    user.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="user.reset_password", entity_type="User", entity_id=str(user.id))
    s.commit()
    return ok(None, message="Password reset.")


# ---------- Roles ----------
@bp.get("/roles")
@require_permission("users.manage")
def roles_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(Role)
    total = q.count()
    roles = q.order_by(Role.key.asc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in roles], total=total)


# ---------- Audit ----------
@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(AuditEvent)
    action = clean_str(request.args.get("action"))
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    entity_type = clean_str(request.args.get("entity_type"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    actor = clean_str(request.args.get("actor"))
    if actor:
        q = q.filter(AuditEvent.actor_username.ilike(f"%{actor}%"))
    total = q.count()
    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).offset(offset).limit(limit).all()
    return ok([e.to_dict() for e in events], total=total)


# ---------- Settings ----------
@bp.get("/settings")
@require_permission("settings.manage")
def settings_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(SystemSetting)
    category = clean_str(request.args.get("category"))
    if category:
        q = q.filter(SystemSetting.category == category)
    total = q.count()
    rows = q.order_by(SystemSetting.category.asc(), SystemSetting.key.asc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in rows], total=total)


@bp.put("/settings/<key>")
@require_permission("settings.manage")
def settings_upsert(key: str):
    s = db_session()
    actor = current_user()
    payload = json_body()
    if "value" not in payload or payload.get("value") is None:
        raise ApiError("Missing required fields: value")
    value = str(payload["value"])

    row = s.query(SystemSetting).filter(SystemSetting.key == key).one_or_none()
    old_value = row.value if row else None
    if row is None:
        row = SystemSetting(key=key, value=value)
        s.add(row)
    row.value = value
    if "category" in payload:
        row.category = clean_str(payload.get("category"))
    if "description" in payload:
        row.description = clean_str(payload.get("description"))
    row.updated_at = datetime.utcnow()
    row.updated_by_user_id = actor.id
    record_event(
        s,
        actor=actor,
        action="setting.update",
        entity_type="SystemSetting",
        entity_id=key,
        metadata={"old": old_value, "new": value},
    )
    s.commit()
    return ok(row.to_dict())
