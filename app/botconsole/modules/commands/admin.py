from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.commands import service
from app.botconsole.modules.commands.models import RobotCommand
from app.botconsole.modules.robots.models import Robot
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys

bp = Blueprint("commands", __name__)


@bp.get("")
@require_permission("commands.view")
def commands_list():
    s = db_session()
    limit, offset = paging()
    robot_id = clean_str(request.args.get("robot_id"))

    q = s.query(RobotCommand)
    if robot_id:
        q = q.filter(RobotCommand.robot_id == robot_id)
    status = clean_str(request.args.get("status"))
    if status:
        q = q.filter(RobotCommand.status == status)
    command_type = clean_str(request.args.get("command_type"))
    if command_type:
        q = q.filter(RobotCommand.command_type == command_type)

    total = q.count()
    rows = (
        q.order_by(RobotCommand.priority.asc(), RobotCommand.created_at.desc(), RobotCommand.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return ok([c.to_dict() for c in rows], total=total, stats=service.command_stats(s, robot_id))


@bp.post("")
@require_permission("commands.send")
def commands_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_command_payload(payload)
    if errors:
        raise validation_failed(errors)

    robot = s.query(Robot).filter(Robot.robot_id == payload["robot_id"].strip()).one_or_none()
    if robot is None:
        raise ApiError("Robot not found", 404)

    cmd = service.create_command(s, robot, payload, current_user())
    s.commit()
    data = cmd.to_dict()
    data["queue"] = [e.to_dict() for e in cmd.queue_entries]
    return ok(data, 201)


@bp.put("")
@require_permission("commands.send")
def commands_batch():
    s = db_session()
    payload = normalize_keys(json_body())
    result = service.batch_update(
        s,
        clean_str(payload.get("action")) or "",
        payload.get("command_ids"),
        payload.get("data") if isinstance(payload.get("data"), dict) else None,
        current_user(),
    )
    s.commit()
    return ok(result, message=f"Updated {result['updated_count']} command(s).")


@bp.get("/<int:command_id>")
@require_permission("commands.view")
def commands_get(command_id: int):
    s = db_session()
    cmd = get_or_404(s, RobotCommand, command_id, "Command")
    data = cmd.to_dict()
    data["queue"] = [e.to_dict() for e in cmd.queue_entries]
    return ok(data)


@bp.put("/<int:command_id>")
@require_permission("commands.send")
def commands_update(command_id: int):
    s = db_session()
    cmd = get_or_404(s, RobotCommand, command_id, "Command")
    payload = normalize_keys(json_body())
    change = service.record_outcome(cmd, payload)
    record_event(
        s,
        actor=current_user(),
        action="command.update",
        entity_type="RobotCommand",
        entity_id=str(cmd.id),
        metadata={"status": change},
    )
    s.commit()
    return ok(cmd.to_dict())


@bp.delete("/<int:command_id>")
@require_permission("commands.send")
def commands_delete(command_id: int):
    s = db_session()
    cmd = get_or_404(s, RobotCommand, command_id, "Command")
    if cmd.status == "processing":
        raise ApiError("Command is processing; cancel it first.", 409)
    record_event(
        s,
        actor=current_user(),
        action="command.delete",
        entity_type="RobotCommand",
        entity_id=str(cmd.id),
        metadata={"robot_id": cmd.robot_id, "status": cmd.status},
    )
    s.delete(cmd)
    s.commit()
    return ok(None, message="Command deleted.")


@bp.post("/<int:command_id>/retry")
@require_permission("commands.send")
def commands_retry(command_id: int):
    s = db_session()
    cmd = get_or_404(s, RobotCommand, command_id, "Command")
    service.retry_command(s, cmd)
    record_event(
        s,
        actor=current_user(),
        action="command.retry",
        entity_type="RobotCommand",
        entity_id=str(cmd.id),
        metadata={"retry_count": cmd.retry_count},
    )
    s.commit()
    return ok(cmd.to_dict(), message="Command re-queued.")
