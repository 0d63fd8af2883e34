from __future__ import annotations

from flask import Blueprint, current_app, request

from app.botconsole.api import ApiError, fail, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.robots import service
from app.botconsole.modules.robots.models import Robot, RobotGroup, RobotRole
from app.botconsole.modules.worktool.client import WorkToolError
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, iso, normalize_keys, parse_bool, parse_int

bp = Blueprint("robots", __name__)


# ---------- Robots ----------
@bp.get("/robots")
@require_permission("robots.view")
def robots_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(Robot)

    is_active = parse_bool(request.args.get("is_active"))
    if is_active is not None:
        q = q.filter(Robot.is_active.is_(is_active))
    status = clean_str(request.args.get("status"))
    if status:
        q = q.filter(Robot.status == status)
    group_id = parse_int(request.args.get("group_id"))
    if group_id is not None:
        q = q.filter(Robot.group_id == group_id)
    search = clean_str(request.args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter((Robot.name.ilike(like)) | (Robot.robot_id.ilike(like)))

    total = q.count()
    robots = q.order_by(Robot.created_at.desc(), Robot.id.desc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in robots], total=total)


@bp.post("/robots")
@require_permission("robots.edit")
def robots_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_robot_payload(payload)
    if errors:
        raise validation_failed(errors)
    if s.query(Robot).filter(Robot.robot_id == payload["robot_id"].strip()).one_or_none():
        raise ApiError("A robot with this robot_id already exists.", 409)

    robot = service.create_robot(s, payload, current_user())
    s.commit()
    return ok(robot.to_dict(), 201)


# Registered before /robots/<int:robot_pk> routes so "check-all" is never parsed as an id.
@bp.post("/robots/check-all")
@require_permission("robots.operate")
def robots_check_all():
    s = db_session()
    summary = service.check_all(s)
    record_event(
        s,
        actor=current_user(),
        action="robot.check_all",
        entity_type="Robot",
        metadata={"checked": summary["checked"], "online": summary["online"]},
    )
    s.commit()
    return ok(summary)


@bp.get("/robots/<int:robot_pk>")
@require_permission("robots.view")
def robots_get(robot_pk: int):
    from app.botconsole.modules.loadbalancing.service import ensure_row

    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    data = robot.to_dict()
    data["load_balancing"] = ensure_row(s, robot.robot_id).to_dict()
    s.commit()
    return ok(data)


@bp.put("/robots/<int:robot_pk>")
@require_permission("robots.edit")
def robots_update(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    payload = normalize_keys(json_body())
    errors = service.validate_robot_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    service.update_robot(s, robot, payload, current_user())
    s.commit()
    return ok(robot.to_dict())


@bp.delete("/robots/<int:robot_pk>")
@require_permission("robots.edit")
def robots_delete(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    service.delete_robot(s, robot, current_user())
    s.commit()
    return ok(None, message="Robot deleted.")


# ---------- API key ----------
@bp.get("/robots/<int:robot_pk>/api-key")
@require_permission("robots.view")
def robots_api_key_status(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    return ok(
        {
            "robot_id": robot.robot_id,
            "has_api_key": bool(robot.api_key_hash),
            "generated_at": iso(robot.api_key_generated_at),
        }
    )


@bp.post("/robots/<int:robot_pk>/api-key")
@require_permission("robots.edit")
def robots_api_key_generate(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    key = service.rotate_api_key(s, robot, current_user())
    s.commit()
    return ok(
        {
            "robot_id": robot.robot_id,
            "api_key": key,
            "generated_at": iso(robot.api_key_generated_at),
        },
        message="Store this key now; it will not be shown again.",
    )


@bp.delete("/robots/<int:robot_pk>/api-key")
@require_permission("robots.edit")
def robots_api_key_revoke(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    if not robot.api_key_hash:
        raise ApiError("Robot has no API key.", 404)
    service.revoke_api_key(s, robot, current_user())
    s.commit()
    return ok(None, message="API key revoked.")


# ---------- WorkTool operations ----------
@bp.post("/robots/<int:robot_pk>/check")
@require_permission("robots.operate")
def robots_check(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    result = service.check_status(s, robot)
    record_event(
        s,
        actor=current_user(),
        action="robot.check",
        entity_type="Robot",
        entity_id=robot.robot_id,
        metadata={"status": result["status"]},
    )
    s.commit()
    return ok(result)


@bp.post("/robots/<int:robot_pk>/sync-info")
@require_permission("robots.operate")
def robots_sync_info(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    try:
        changed = service.sync_info(s, robot, current_user())
    except WorkToolError as e:
        # keep the ApiCallLog row for the failed call
        s.commit()
        current_app.logger.warning("sync-info failed robot_id=%s: %s", robot.robot_id, e)
        return fail(f"WorkTool sync failed: {e}", 502)
    s.commit()
    return ok(robot.to_dict(), changed=sorted(changed))


@bp.post("/robots/<int:robot_pk>/send-message")
@require_permission("robots.operate")
def robots_send_message(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    payload = normalize_keys(json_body())
    try:
        result = service.send_message(s, robot, payload, current_user())
    except WorkToolError as e:
        s.commit()
        current_app.logger.warning("send-message failed robot_id=%s: %s", robot.robot_id, e)
        return fail(f"WorkTool send failed: {e}", 502)
    s.commit()
    return ok(result, message="Message sent.")


# ---------- Groups ----------
@bp.get("/robot-groups")
@require_permission("robots.view")
def groups_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(RobotGroup)
    total = q.count()
    groups = q.order_by(RobotGroup.priority.asc(), RobotGroup.name.asc()).offset(offset).limit(limit).all()
    return ok([g.to_dict(with_counts=True) for g in groups], total=total)


@bp.post("/robot-groups")
@require_permission("robots.edit")
def groups_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_group_payload(payload)
    if errors:
        raise validation_failed(errors)
    if s.query(RobotGroup).filter(RobotGroup.name == payload["name"].strip()).one_or_none():
        raise ApiError("A group with this name already exists.", 409)
    group = service.save_group(s, None, payload, current_user())
    s.commit()
    return ok(group.to_dict(with_counts=True), 201)


@bp.get("/robot-groups/<int:group_id>")
@require_permission("robots.view")
def groups_get(group_id: int):
    s = db_session()
    group = get_or_404(s, RobotGroup, group_id, "Robot group")
    data = group.to_dict(with_counts=True)
    data["robots"] = [{"id": r.id, "robot_id": r.robot_id, "name": r.name, "status": r.status} for r in group.robots]
    return ok(data)


@bp.put("/robot-groups/<int:group_id>")
@require_permission("robots.edit")
def groups_update(group_id: int):
    s = db_session()
    group = get_or_404(s, RobotGroup, group_id, "Robot group")
    payload = normalize_keys(json_body())
    errors = service.validate_group_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    if "name" in payload:
        clash = (
            s.query(RobotGroup)
            .filter(RobotGroup.name == payload["name"].strip(), RobotGroup.id != group.id)
            .one_or_none()
        )
        if clash:
            raise ApiError("A group with this name already exists.", 409)
    service.save_group(s, group, payload, current_user())
    s.commit()
    return ok(group.to_dict(with_counts=True))


@bp.delete("/robot-groups/<int:group_id>")
@require_permission("robots.edit")
def groups_delete(group_id: int):
    s = db_session()
    group = get_or_404(s, RobotGroup, group_id, "Robot group")
    if group.robots:
        raise ApiError(f"Group still has {len(group.robots)} robot(s); reassign them first.", 409)
    record_event(
        s,
        actor=current_user(),
        action="robot_group.delete",
        entity_type="RobotGroup",
        entity_id=str(group.id),
        metadata={"name": group.name},
    )
    s.delete(group)
    s.commit()
    return ok(None, message="Group deleted.")


# ---------- Robot roles ----------
@bp.get("/robot-roles")
@require_permission("robots.view")
def roles_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(RobotRole)
    total = q.count()
    roles = q.order_by(RobotRole.is_system.desc(), RobotRole.name.asc()).offset(offset).limit(limit).all()
    return ok([r.to_dict(with_counts=True) for r in roles], total=total)


@bp.post("/robot-roles")
@require_permission("robots.edit")
def roles_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_role_payload(payload)
    if errors:
        raise validation_failed(errors)
    if s.query(RobotRole).filter(RobotRole.name == payload["name"].strip()).one_or_none():
        raise ApiError("A role with this name already exists.", 409)
    role = service.save_role(s, None, payload, current_user())
    s.commit()
    return ok(role.to_dict(with_counts=True), 201)


@bp.get("/robot-roles/<int:role_id>")
@require_permission("robots.view")
def roles_get(role_id: int):
    s = db_session()
    role = get_or_404(s, RobotRole, role_id, "Robot role")
    return ok(role.to_dict(with_counts=True))


@bp.put("/robot-roles/<int:role_id>")
@require_permission("robots.edit")
def roles_update(role_id: int):
    s = db_session()
    role = get_or_404(s, RobotRole, role_id, "Robot role")
    payload = normalize_keys(json_body())
    errors = service.validate_role_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    if "name" in payload:
        clash = (
            s.query(RobotRole)
            .filter(RobotRole.name == payload["name"].strip(), RobotRole.id != role.id)
            .one_or_none()
        )
        if clash:
            raise ApiError("A role with this name already exists.", 409)
    service.save_role(s, role, payload, current_user())
    s.commit()
    return ok(role.to_dict(with_counts=True))


@bp.delete("/robot-roles/<int:role_id>")
@require_permission("robots.edit")
def roles_delete(role_id: int):
    s = db_session()
    role = get_or_404(s, RobotRole, role_id, "Robot role")
    if role.is_system:
        raise ApiError("System roles cannot be deleted.", 400)
    record_event(
        s,
        actor=current_user(),
        action="robot_role.delete",
        entity_type="RobotRole",
        entity_id=str(role.id),
        metadata={"name": role.name},
    )
    s.delete(role)
    s.commit()
    return ok(None, message="Role deleted.")


# ---------- Monitoring ----------
@bp.get("/robot-monitoring")
@require_permission("robots.view")
def monitoring_summary():
    s = db_session()
    return ok(service.monitoring_summary(s))


@bp.post("/robot-monitoring/heartbeat")
@require_permission("robots.operate")
def monitoring_heartbeat():
    s = db_session()
    payload = normalize_keys(json_body())
    robot_id = clean_str(payload.get("robot_id"))
    if not robot_id:
        raise ApiError("Missing required fields: robot_id")
    robot = s.query(Robot).filter(Robot.robot_id == robot_id).one_or_none()
    if robot is None:
        raise ApiError("Robot not found", 404)
    result = service.record_heartbeat(s, robot, payload)
    record_event(s, actor=current_user(), action="robot.heartbeat", entity_type="Robot", entity_id=robot.robot_id)
    s.commit()
    return ok(result)
