from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, json_body, ok, paging
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.loadbalancing import service
from app.botconsole.modules.robots.models import Robot
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys, parse_int

bp = Blueprint("loadbalancing", __name__)


@bp.get("")
@require_permission("loadbalancing.view")
def loadbalancing_list():
    s = db_session()
    limit, offset = paging()
    items, stats = service.list_with_stats(
        s,
        group_id=parse_int(request.args.get("group_id")),
        robot_id=clean_str(request.args.get("robot_id")),
    )
    return ok(items[offset : offset + limit], total=len(items), stats=stats)


@bp.post("/select")
@require_permission("loadbalancing.view")
def loadbalancing_select():
    s = db_session()
    payload = normalize_keys(json_body())
    required = payload.get("required_capabilities") or []
    excluded = payload.get("exclude_robots") or []
    if not isinstance(required, list) or not isinstance(excluded, list):
        raise ApiError("required_capabilities and exclude_robots must be lists.")

    selection = service.select_robot(
        s,
        group_id=parse_int(payload.get("group_id")),
        role_id=parse_int(payload.get("role_id")),
        required_capabilities=[str(c) for c in required],
        exclude_robots=[str(r) for r in excluded],
        strategy=clean_str(payload.get("priority")),
    )
    if selection is None:
        # "no robot" is an answer, not an error
        return ok(None, success=False, message="No available robot matches the criteria.")
    return ok(selection.to_dict())


@bp.put("")
@require_permission("loadbalancing.edit")
def loadbalancing_update():
    s = db_session()
    payload = normalize_keys(json_body())
    robot_id = clean_str(payload.get("robot_id"))
    updates = payload.get("updates")
    if not robot_id:
        raise ApiError("Missing required fields: robot_id")
    if not isinstance(updates, dict):
        raise ApiError("updates must be an object.")

    robot = s.query(Robot).filter(Robot.robot_id == robot_id).one_or_none()
    if robot is None:
        raise ApiError("Robot not found", 404)

    lb = service.ensure_row(s, robot_id)
    applied = service.apply_updates(lb, updates)
    record_event(
        s,
        actor=current_user(),
        action="loadbalancing.update",
        entity_type="RobotLoadBalancing",
        entity_id=robot_id,
        metadata={"updates": applied},
    )
    s.commit()
    return ok(lb.to_dict())
