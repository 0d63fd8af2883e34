from __future__ import annotations

from flask import Blueprint, request
from sqlalchemy import or_

from app.botconsole.api import ok, paging
from app.botconsole.db import db_session
from app.botconsole.modules.callback.models import SessionMessage
from app.botconsole.modules.worktool.models import ApiCallLog
from app.botconsole.rbac import require_permission
from app.botconsole.utils import clean_str, parse_bool

bp = Blueprint("messages", __name__)


@bp.get("/messages")
@require_permission("messages.view")
def messages_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(SessionMessage)
    for field in ("session_id", "robot_id", "user_id", "group_name"):
        value = clean_str(request.args.get(field))
        if value:
            q = q.filter(getattr(SessionMessage, field) == value)
    from_user = parse_bool(request.args.get("is_from_user"))
    if from_user is not None:
        q = q.filter(SessionMessage.is_from_user.is_(from_user))
    text = clean_str(request.args.get("q"))
    if text:
        like = f"%{text}%"
        q = q.filter(or_(SessionMessage.content.ilike(like), SessionMessage.user_name.ilike(like)))

    total = q.count()
    rows = q.order_by(SessionMessage.created_at.desc(), SessionMessage.id.desc()).offset(offset).limit(limit).all()
    return ok([m.to_dict() for m in rows], total=total)


@bp.get("/robot-callback-logs")
@require_permission("messages.view")
def callback_logs_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(ApiCallLog).filter(ApiCallLog.api_type == "callback")
    robot_id = clean_str(request.args.get("robot_id"))
    if robot_id:
        q = q.filter(ApiCallLog.robot_id == robot_id)
    success = parse_bool(request.args.get("success"))
    if success is not None:
        q = q.filter(ApiCallLog.success.is_(success))
    total = q.count()
    rows = q.order_by(ApiCallLog.created_at.desc(), ApiCallLog.id.desc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in rows], total=total)
