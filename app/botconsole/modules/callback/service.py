"""
Inbound WorkTool message handling: store the message, answer from the QA base,
log the AI/human decision, evaluate alert keywords, count the request.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.botconsole.modules.alerts.service import trigger_alert
from app.botconsole.modules.callback.models import SessionMessage
from app.botconsole.modules.decisions.service import build_decision
from app.botconsole.modules.loadbalancing.service import ensure_row
from app.botconsole.modules.qa.service import match_message
from app.botconsole.utils import clean_str, parse_bool, parse_int, parse_remote_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.modules.robots.models import Robot

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("robot_id", "spoken", "received_name")
TEXT_REPLY_TYPE = 5000


def session_id_for(robot_id: str, received_name: str, group_name: str | None) -> str:
    if group_name:
        return f"group:{robot_id}:{group_name}"
    return f"private:{robot_id}:{received_name}"


def reply_body(reply: str | None) -> dict:
    """Response in the shape WorkTool expects from a message callback."""
    data = {"type": TEXT_REPLY_TYPE, "info": {"text": reply}} if reply else None
    return {"code": 0, "message": "success", "data": data}


def missing_fields(payload: dict) -> list[str]:
    return [f for f in REQUIRED_FIELDS if not clean_str(payload.get(f))]


def process_message(s: "Session", robot: "Robot", payload: dict, now: datetime | None = None) -> dict:
    """
    Handle one inbound message for `robot`. Returns a summary:
    session_id, message_id, reply (or None), qa match info, alert outcome.
    """
    now = now or datetime.utcnow()
    spoken = str(payload["spoken"]).strip()
    received_name = str(payload["received_name"]).strip()
    group_name = clean_str(payload.get("group_name"))
    session_id = session_id_for(robot.robot_id, received_name, group_name)
    message_id = clean_str(payload.get("message_id")) or uuid.uuid4().hex

    s.add(
        SessionMessage(
            session_id=session_id,
            robot_id=robot.robot_id,
            message_id=message_id,
            user_id=received_name,
            user_name=received_name,
            group_name=group_name,
            group_remark=clean_str(payload.get("group_remark")),
            room_type=parse_int(payload.get("room_type")),
            text_type=parse_int(payload.get("text_type")),
            at_me=bool(parse_bool(payload.get("at_me"), False)),
            content=spoken,
            is_from_user=True,
            sent_at=parse_remote_datetime(payload.get("timestamp")),
            created_at=now,
        )
    )

    receiver_type = "group" if group_name else "user"
    match = match_message(s, spoken, group_name=group_name, receiver_type=receiver_type)
    decision = {
        "session_id": session_id,
        "message_id": message_id,
        "robot_id": robot.robot_id,
        "message_type": receiver_type,
    }
    if match is not None:
        s.add(
            SessionMessage(
                session_id=session_id,
                robot_id=robot.robot_id,
                message_id=uuid.uuid4().hex,
                user_id=received_name,
                user_name=robot.name,
                group_name=group_name,
                content=match.entry.reply,
                is_from_user=False,
                reply_to_message_id=message_id,
                created_at=now,
            )
        )
        decision.update(
            should_ai_reply=True,
            ai_action="replied",
            strategy=f"qa_{match.match_type}",
            reason=f"qa_match:{match.entry.id}",
            info_context={"qa_id": match.entry.id, "keyword": match.matched_keyword},
        )
    else:
        decision.update(should_ai_reply=False, ai_action="none", reason="no_qa_match")
    s.add(build_decision(decision))

    alert = trigger_alert(
        s,
        {
            "session_id": session_id,
            "user_id": received_name,
            "user_name": received_name,
            "group_name": group_name,
            "content": spoken,
            "robot_id": robot.robot_id,
        },
        now=now,
    )

    lb = ensure_row(s, robot.robot_id)
    lb.total_requests += 1
    lb.last_updated_at = now

    logger.info(
        "Callback robot_id=%s session_id=%s qa=%s alert=%s",
        robot.robot_id,
        session_id,
        match.match_type if match else "none",
        alert.get("reason") or ("raised" if alert.get("triggered") else "none"),
    )
    return {
        "session_id": session_id,
        "message_id": message_id,
        "reply": match.entry.reply if match else None,
        "qa": match.to_dict() if match else {"matched": False},
        "alert": {
            "triggered": alert.get("triggered", False),
            "reason": alert.get("reason"),
            "alert_id": (alert.get("alert") or {}).get("id"),
        },
    }


def callback_log_entry(
    robot_id: str | None,
    url: str,
    body: Any,
    status: int,
    response: dict,
    elapsed_ms: int,
    error: str | None = None,
) -> dict:
    return {
        "robot_id": robot_id,
        "api_type": "callback",
        "url": url,
        "method": "POST",
        "request_body": body,
        "response_status": status,
        "response_data": response,
        "response_time": elapsed_ms,
        "success": status < 400,
        "error_message": error,
    }
