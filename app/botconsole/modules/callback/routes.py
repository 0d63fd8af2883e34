from __future__ import annotations

import logging
import time

from flask import Blueprint, jsonify, request

from app.botconsole.db import db_session
from app.botconsole.modules.callback import service
from app.botconsole.modules.robots.models import Robot
from app.botconsole.modules.robots.service import verify_api_key
from app.botconsole.modules.worktool.service import record_api_call
from app.botconsole.utils import clean_str, normalize_keys

logger = logging.getLogger(__name__)

bp = Blueprint("callback", __name__)


@bp.get("/callback")
def callback_probe():
    return jsonify({"code": 0, "message": "callback endpoint ready"}), 200


@bp.post("/callback")
def callback_receive():
    s = db_session()
    started = time.monotonic()
    raw = request.get_json(silent=True)
    if not isinstance(raw, dict):
        raw = request.form.to_dict()
    payload = normalize_keys(raw)
    robot_id = clean_str(payload.get("robot_id"))

    def _finish(status: int, body: dict, error: str | None = None):
        elapsed = int((time.monotonic() - started) * 1000)
        record_api_call(s, service.callback_log_entry(robot_id, request.path, raw, status, body, elapsed, error))
        s.commit()
        return jsonify(body), status

    def _reject(message: str, status: int):
        body = {"success": False, "error": message}
        logger.warning("Callback rejected (%s) robot_id=%s: %s", status, robot_id, message)
        return _finish(status, body, message)

    missing = service.missing_fields(payload)
    if missing:
        return _reject(f"Missing required fields: {', '.join(missing)}", 400)

    robot = s.query(Robot).filter(Robot.robot_id == robot_id).one_or_none()
    if robot is None:
        return _reject("Robot not found", 404)
    if not robot.is_active:
        return _reject("Robot is not active", 403)
    if not verify_api_key(robot, request.headers.get("X-Api-Key")):
        return _reject("Invalid API key", 401)

    result = service.process_message(s, robot, payload)
    return _finish(200, service.reply_body(result["reply"]))
