from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context

from app.botconsole.modules.worktool.client import WorkToolClient
from app.botconsole.modules.worktool.models import ApiCallLog

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.modules.robots.models import Robot

logger = logging.getLogger(__name__)

# Admin-facing kinds -> client method name
LIST_KINDS = {
    "login-logs": "list_login_logs",
    "raw-messages": "list_raw_messages",
    "command-results": "list_command_results",
    "callback-logs": "list_callback_logs",
}


def _timeout_seconds() -> int:
    if has_app_context():
        return int(current_app.config.get("WORKTOOL_TIMEOUT_SECONDS") or 10)
    return 10


def _jsonable(value: Any) -> dict | None:
    if value is None:
        return None
    return value if isinstance(value, dict) else {"value": value}


def record_api_call(s: "Session", entry: dict[str, Any]) -> ApiCallLog:
    row = ApiCallLog(
        robot_id=entry.get("robot_id"),
        api_type=entry.get("api_type") or "unknown",
        url=entry.get("url"),
        method=entry.get("method") or "GET",
        request_params=_jsonable(entry.get("request_params")),
        request_body=_jsonable(entry.get("request_body")),
        response_status=entry.get("response_status"),
        response_data=_jsonable(entry.get("response_data")),
        response_time=entry.get("response_time"),
        success=bool(entry.get("success")),
        error_message=entry.get("error_message"),
    )
    s.add(row)
    if not row.success:
        logger.warning(
            "WorkTool call failed robot_id=%s api_type=%s error=%s",
            row.robot_id,
            row.api_type,
            row.error_message,
        )
    return row


def client_for(s: "Session", robot: "Robot") -> WorkToolClient:
    """Client bound to a robot; every call it makes is written to ApiCallLog on `s`."""
    return WorkToolClient(
        base_url=robot.api_base_url,
        robot_id=robot.robot_id,
        timeout_seconds=_timeout_seconds(),
        observer=lambda entry: record_api_call(s, entry),
    )


def list_remote(s: "Session", robot: "Robot", kind: str, *, page: int = 1, page_size: int = 20) -> Any:
    method_name = LIST_KINDS.get(kind)
    if not method_name:
        raise ValueError(f"Unknown kind. Must be one of: {', '.join(LIST_KINDS)}")
    client = client_for(s, robot)
    return getattr(client, method_name)(page=page, page_size=page_size)
