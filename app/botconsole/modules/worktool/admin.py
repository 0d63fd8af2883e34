from __future__ import annotations

from flask import Blueprint, current_app, request

from app.botconsole.api import fail, get_or_404, ok, paging
from app.botconsole.db import db_session
from app.botconsole.modules.robots.models import Robot
from app.botconsole.modules.worktool.client import WorkToolError
from app.botconsole.modules.worktool.models import ApiCallLog
from app.botconsole.modules.worktool.service import LIST_KINDS, list_remote
from app.botconsole.rbac import require_permission
from app.botconsole.utils import clean_str, parse_bool, parse_int

bp = Blueprint("worktool", __name__)


@bp.get("/robots/<int:robot_pk>/worktool/<kind>")
@require_permission("robots.view")
def worktool_list(robot_pk: int, kind: str):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    if kind not in LIST_KINDS:
        return fail(f"Unknown kind. Must be one of: {', '.join(LIST_KINDS)}", 404)

    page = max(1, parse_int(request.args.get("page"), 1))
    page_size = max(1, min(parse_int(request.args.get("page_size"), 20), 100))
    try:
        data = list_remote(s, robot, kind, page=page, page_size=page_size)
    except WorkToolError as e:
        s.commit()
        current_app.logger.warning("WorkTool %s failed robot_id=%s: %s", kind, robot.robot_id, e)
        return fail(f"WorkTool request failed: {e}", 502)
    s.commit()
    return ok(data, page=page, page_size=page_size)


@bp.get("/robots/<int:robot_pk>/api-call-logs")
@require_permission("robots.view")
def api_call_logs(robot_pk: int):
    s = db_session()
    robot = get_or_404(s, Robot, robot_pk, "Robot")
    limit, offset = paging()
    q = s.query(ApiCallLog).filter(ApiCallLog.robot_id == robot.robot_id, ApiCallLog.api_type != "callback")
    api_type = clean_str(request.args.get("api_type"))
    if api_type:
        q = q.filter(ApiCallLog.api_type == api_type)
    success = parse_bool(request.args.get("success"))
    if success is not None:
        q = q.filter(ApiCallLog.success.is_(success))
    total = q.count()
    rows = q.order_by(ApiCallLog.created_at.desc(), ApiCallLog.id.desc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in rows], total=total)
