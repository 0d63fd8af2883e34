from __future__ import annotations

import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.botconsole.audit import record_event
from app.botconsole.constants import ROBOT_STATUSES
from app.botconsole.modules.worktool.client import WorkToolError
from app.botconsole.modules.worktool.service import client_for
from app.botconsole.utils import clean_str, parse_bool, parse_float, parse_int, parse_remote_datetime, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.models import User
    from app.botconsole.modules.robots.models import Robot, RobotGroup, RobotRole

logger = logging.getLogger(__name__)

ROBOT_ID_MAX_LENGTH = 64
API_KEY_PREFIX = "rk_"
EXPIRING_WITHIN_DAYS = 7
_URL_RE = re.compile(r"^https?://[^\s/]+", re.IGNORECASE)


# ---------- API keys ----------
def generate_api_key() -> str:
    # token_urlsafe(24) yields exactly 32 url-safe characters
    return API_KEY_PREFIX + secrets.token_urlsafe(24)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def verify_api_key(robot: "Robot", presented: str | None) -> bool:
    if not robot.api_key_hash:
        return True
    if not presented:
        return False
    return secrets.compare_digest(hash_api_key(presented.strip()), robot.api_key_hash)


def rotate_api_key(s: "Session", robot: "Robot", user: "User") -> str:
    """Generate (or replace) a robot's API key. Returns the plaintext; only the hash is stored."""
    rotated = bool(robot.api_key_hash)
    key = generate_api_key()
    robot.api_key_hash = hash_api_key(key)
    robot.api_key_generated_at = datetime.utcnow()
    robot.updated_at = robot.api_key_generated_at
    record_event(
        s,
        actor=user,
        action="robot.api_key_rotate" if rotated else "robot.api_key_generate",
        entity_type="Robot",
        entity_id=robot.robot_id,
    )
    return key


def revoke_api_key(s: "Session", robot: "Robot", user: "User") -> None:
    robot.api_key_hash = None
    robot.api_key_generated_at = None
    robot.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="robot.api_key_revoke", entity_type="Robot", entity_id=robot.robot_id)


# ---------- Robots ----------
def _capabilities(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [c.strip() for c in value.split(",") if c.strip()]
    if not isinstance(value, list):
        raise ValueError("capabilities must be a list of strings.")
    return [str(c).strip() for c in value if str(c).strip()]


def validate_robot_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "robot_id", "name", "api_base_url", "description")
    robot_id = clean_str(payload.get("robot_id")) or ""
    if not partial or "robot_id" in payload:
        if not robot_id:
            errors.append("robot_id is required.")
        elif len(robot_id) > ROBOT_ID_MAX_LENGTH or any(ch.isspace() for ch in robot_id):
            errors.append(f"robot_id must be at most {ROBOT_ID_MAX_LENGTH} characters with no whitespace.")
    if not partial or "name" in payload:
        if not clean_str(payload.get("name")):
            errors.append("name is required.")
    if not partial or "api_base_url" in payload:
        url = clean_str(payload.get("api_base_url")) or ""
        if not url:
            errors.append("api_base_url is required.")
        elif not _URL_RE.match(url):
            errors.append("api_base_url must be an http(s) URL.")
    if "status" in payload and payload.get("status") not in ROBOT_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(ROBOT_STATUSES)}")
    if "load_balancing_weight" in payload:
        weight = parse_float(payload.get("load_balancing_weight"))
        if weight is None or weight < 0:
            errors.append("load_balancing_weight must be a non-negative number.")
    return errors


def _resolve_refs(
    s: "Session", group_id: int | None, role_id: int | None
) -> tuple["RobotGroup | None", "RobotRole | None"]:
    from app.botconsole.modules.robots.models import RobotGroup, RobotRole

    group = s.get(RobotGroup, group_id) if group_id is not None else None
    if group_id is not None and group is None:
        raise ValueError("Robot group not found.")
    role = s.get(RobotRole, role_id) if role_id is not None else None
    if role_id is not None and role is None:
        raise ValueError("Robot role not found.")
    return group, role


def create_robot(s: "Session", payload: dict, user: "User") -> "Robot":
    from app.botconsole.modules.loadbalancing.service import ensure_row
    from app.botconsole.modules.robots.models import Robot

    group_id = parse_int(payload.get("group_id"))
    role_id = parse_int(payload.get("role_id"))
    group, role = _resolve_refs(s, group_id, role_id)

    now = datetime.utcnow()
    robot = Robot(
        robot_id=payload["robot_id"].strip(),
        name=payload["name"].strip(),
        api_base_url=payload["api_base_url"].strip(),
        description=clean_str(payload.get("description")),
        is_active=parse_bool(payload.get("is_active"), True),
        status=payload.get("status") or "unknown",
        group=group,
        role=role,
        capabilities=_capabilities(payload.get("capabilities")),
        load_balancing_weight=parse_float(payload.get("load_balancing_weight"), 1.0),
        message_callback_enabled=bool(parse_bool(payload.get("message_callback_enabled"), False)),
        created_at=now,
        updated_at=now,
    )
    s.add(robot)
    s.flush()
    ensure_row(s, robot.robot_id)

    record_event(
        s,
        actor=user,
        action="robot.create",
        entity_type="Robot",
        entity_id=robot.robot_id,
        metadata={"name": robot.name, "api_base_url": robot.api_base_url},
    )
    return robot


_EDITABLE_TEXT = ("name", "api_base_url", "description")


def update_robot(s: "Session", robot: "Robot", payload: dict, user: "User") -> "Robot":
    changes: dict[str, Any] = {}

    if "robot_id" in payload and clean_str(payload.get("robot_id")) != robot.robot_id:
        raise ValueError("robot_id cannot be changed.")

    for field in _EDITABLE_TEXT:
        if field in payload:
            new = clean_str(payload.get(field))
            if new != getattr(robot, field):
                changes[field] = {"old": getattr(robot, field), "new": new}
                setattr(robot, field, new)

    if "is_active" in payload:
        new_active = parse_bool(payload.get("is_active"))
        if new_active is None:
            raise ValueError("is_active must be a boolean.")
        if new_active != robot.is_active:
            changes["is_active"] = {"old": robot.is_active, "new": new_active}
            robot.is_active = new_active

    if "status" in payload and payload["status"] != robot.status:
        changes["status"] = {"old": robot.status, "new": payload["status"]}
        robot.status = payload["status"]

    if "group_id" in payload or "role_id" in payload:
        group_id = parse_int(payload.get("group_id")) if "group_id" in payload else robot.group_id
        role_id = parse_int(payload.get("role_id")) if "role_id" in payload else robot.role_id
        group, role = _resolve_refs(s, group_id, role_id)
        if group_id != robot.group_id:
            changes["group_id"] = {"old": robot.group_id, "new": group_id}
            robot.group = group
        if role_id != robot.role_id:
            changes["role_id"] = {"old": robot.role_id, "new": role_id}
            robot.role = role

    if "capabilities" in payload:
        caps = _capabilities(payload.get("capabilities"))
        if caps != list(robot.capabilities or []):
            changes["capabilities"] = {"old": robot.capabilities, "new": caps}
            robot.capabilities = caps

    if "load_balancing_weight" in payload:
        weight = parse_float(payload.get("load_balancing_weight"), 1.0)
        if weight != robot.load_balancing_weight:
            changes["load_balancing_weight"] = {"old": robot.load_balancing_weight, "new": weight}
            robot.load_balancing_weight = weight

    if "message_callback_enabled" in payload:
        enabled = bool(parse_bool(payload.get("message_callback_enabled"), False))
        if enabled != robot.message_callback_enabled:
            changes["message_callback_enabled"] = {"old": robot.message_callback_enabled, "new": enabled}
            robot.message_callback_enabled = enabled

    if changes:
        robot.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="robot.update",
            entity_type="Robot",
            entity_id=robot.robot_id,
            metadata={"changes": changes},
        )
    return robot


def delete_robot(s: "Session", robot: "Robot", user: "User") -> None:
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing

    s.query(RobotLoadBalancing).filter(RobotLoadBalancing.robot_id == robot.robot_id).delete(synchronize_session=False)
    record_event(
        s,
        actor=user,
        action="robot.delete",
        entity_type="Robot",
        entity_id=robot.robot_id,
        metadata={"name": robot.name},
    )
    s.delete(robot)


# ---------- WorkTool status/info ----------
def check_status(s: "Session", robot: "Robot") -> dict:
    """Ask WorkTool whether the robot is online. Failures mark it offline; never raises."""
    robot.last_check_at = datetime.utcnow()
    try:
        online = client_for(s, robot).is_online()
        robot.status = "online" if online else "offline"
        robot.last_error = None
    except WorkToolError as e:
        robot.status = "offline"
        robot.last_error = str(e)
        logger.warning("Robot status check failed robot_id=%s: %s", robot.robot_id, e)
    return {
        "robot_id": robot.robot_id,
        "status": robot.status,
        "is_online": robot.status == "online",
        "last_check_at": robot.last_check_at.isoformat(),
        "error": robot.last_error,
    }


def check_all(s: "Session") -> dict:
    from app.botconsole.modules.robots.models import Robot

    robots = s.query(Robot).filter(Robot.is_active.is_(True)).order_by(Robot.robot_id.asc()).all()
    results = []
    for robot in robots:
        try:
            results.append(check_status(s, robot))
        except Exception as e:
            # One robot's failure never aborts the sweep
            logger.exception("Unexpected error checking robot_id=%s", robot.robot_id)
            robot.status = "error"
            robot.last_error = str(e)
            results.append({"robot_id": robot.robot_id, "status": "error", "is_online": False, "error": str(e)})
    return {
        "checked": len(results),
        "online": sum(1 for r in results if r["status"] == "online"),
        "offline": sum(1 for r in results if r["status"] != "online"),
        "results": results,
    }


def _first(info: dict, *keys: str) -> Any:
    for k in keys:
        if info.get(k) not in (None, ""):
            return info[k]
    return None


def apply_robot_info(robot: "Robot", info: dict) -> dict:
    """Fold a WorkTool robotInfo payload into the robot row. Returns the fields changed."""
    updates = {
        "nickname": _first(info, "name", "nickname", "nickName"),
        "company": _first(info, "corporation", "company"),
        "ip_address": _first(info, "ip", "ipAddress"),
        "activated_at": parse_remote_datetime(_first(info, "firstLogin", "activatedAt", "createTime")),
        "expires_at": parse_remote_datetime(_first(info, "authExpir", "expireTime", "expiresAt")),
    }
    valid = _first(info, "valid", "isValid")
    if valid is not None:
        updates["is_valid"] = parse_bool(valid)
    callback = _first(info, "openCallback", "messageCallbackEnabled")
    if callback is not None:
        updates["message_callback_enabled"] = parse_bool(callback, False)

    changed: dict[str, Any] = {}
    for field, value in updates.items():
        if value is None:
            continue
        if getattr(robot, field) != value:
            changed[field] = value
            setattr(robot, field, value)
    robot.extra_data = info
    robot.updated_at = datetime.utcnow()
    return changed


def sync_info(s: "Session", robot: "Robot", user: "User") -> dict:
    """Pull robot info from WorkTool. Raises WorkToolError on failure."""
    info = client_for(s, robot).get_robot_info()
    changed = apply_robot_info(robot, info)
    record_event(
        s,
        actor=user,
        action="robot.sync_info",
        entity_type="Robot",
        entity_id=robot.robot_id,
        metadata={"changed": sorted(changed)},
    )
    return changed


def send_message(s: "Session", robot: "Robot", payload: dict, user: "User") -> dict:
    to_name = clean_str(payload.get("to_name"))
    content = clean_str(payload.get("content"))
    if not to_name or not content:
        raise ValueError("to_name and content are required.")
    message_type = parse_int(payload.get("message_type"), 1)
    result = client_for(s, robot).send_raw_message(to_name, content, message_type)
    record_event(
        s,
        actor=user,
        action="robot.send_message",
        entity_type="Robot",
        entity_id=robot.robot_id,
        metadata={"to_name": to_name, "length": len(content)},
    )
    return result


# ---------- Groups ----------
def validate_group_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "name", "description")
    if (not partial or "name" in payload) and not clean_str(payload.get("name")):
        errors.append("name is required.")
    if "priority" in payload and parse_int(payload.get("priority")) is None:
        errors.append("priority must be an integer.")
    return errors


def save_group(s: "Session", group: "RobotGroup | None", payload: dict, user: "User") -> "RobotGroup":
    from app.botconsole.modules.robots.models import RobotGroup

    now = datetime.utcnow()
    creating = group is None
    if creating:
        group = RobotGroup(created_at=now, priority=10, is_enabled=True)
        s.add(group)
    if "name" in payload or creating:
        group.name = payload["name"].strip()
    if "description" in payload:
        group.description = clean_str(payload.get("description"))
    if "color" in payload:
        group.color = clean_str(payload.get("color"))
    if "priority" in payload:
        group.priority = parse_int(payload.get("priority"), 10)
    if "is_enabled" in payload:
        group.is_enabled = bool(parse_bool(payload.get("is_enabled"), True))
    group.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="robot_group.create" if creating else "robot_group.update",
        entity_type="RobotGroup",
        entity_id=str(group.id),
        metadata={"name": group.name},
    )
    return group


# ---------- Robot roles ----------
def validate_role_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "name", "description")
    if (not partial or "name" in payload) and not clean_str(payload.get("name")):
        errors.append("name is required.")
    perms = payload.get("permissions")
    if perms is not None and not isinstance(perms, (dict, list)):
        errors.append("permissions must be an object or a list.")
    return errors


def save_role(s: "Session", role: "RobotRole | None", payload: dict, user: "User") -> "RobotRole":
    from app.botconsole.modules.robots.models import RobotRole

    now = datetime.utcnow()
    creating = role is None
    if creating:
        role = RobotRole(created_at=now, is_system=False)
        s.add(role)
    if "name" in payload or creating:
        role.name = payload["name"].strip()
    if "description" in payload:
        role.description = clean_str(payload.get("description"))
    if "permissions" in payload:
        perms = payload.get("permissions")
        role.permissions = {"allowed": perms} if isinstance(perms, list) else (perms or {})
    role.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="robot_role.create" if creating else "robot_role.update",
        entity_type="RobotRole",
        entity_id=str(role.id),
        metadata={"name": role.name},
    )
    return role


# ---------- Monitoring ----------
def monitoring_summary(s: "Session") -> dict:
    from app.botconsole.modules.commands.models import RobotCommand
    from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
    from app.botconsole.modules.robots.models import Robot

    now = datetime.utcnow()
    robots = s.query(Robot).all()
    expiring = [
        r for r in robots if r.expires_at is not None and now <= r.expires_at <= now + timedelta(days=EXPIRING_WITHIN_DAYS)
    ]
    commands_by_status = dict(
        s.query(RobotCommand.status, func.count(RobotCommand.id)).group_by(RobotCommand.status).all()
    )
    avg_success, avg_health = s.query(
        func.avg(RobotLoadBalancing.success_rate), func.avg(RobotLoadBalancing.health_score)
    ).one()

    return {
        "robots": {
            "total": len(robots),
            "active": sum(1 for r in robots if r.is_active),
            "online": sum(1 for r in robots if r.status == "online"),
            "offline": sum(1 for r in robots if r.status == "offline"),
            "error": sum(1 for r in robots if r.status == "error"),
            "expiring_soon": len(expiring),
        },
        "expiring_robots": [
            {"robot_id": r.robot_id, "name": r.name, "expires_at": r.expires_at.isoformat()} for r in expiring
        ],
        "commands": {
            "total": sum(commands_by_status.values()),
            "by_status": commands_by_status,
        },
        "performance": {
            "avg_success_rate": round(float(avg_success), 2) if avg_success is not None else None,
            "avg_health_score": round(float(avg_health), 2) if avg_health is not None else None,
        },
    }


_HEARTBEAT_METRICS = ("current_sessions", "avg_response_time", "success_rate", "error_count")


def record_heartbeat(s: "Session", robot: "Robot", payload: dict) -> dict:
    from app.botconsole.modules.loadbalancing.service import apply_updates, ensure_row

    robot.status = "online"
    robot.last_check_at = datetime.utcnow()
    robot.last_error = None
    lb = ensure_row(s, robot.robot_id)
    metrics = {k: payload[k] for k in _HEARTBEAT_METRICS if payload.get(k) is not None}
    if metrics:
        apply_updates(lb, metrics)
    return {"robot": robot.to_dict(), "load_balancing": lb.to_dict()}
