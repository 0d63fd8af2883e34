"""
Notification dispatch for triggered alerts.

Methods run in priority order; a failing method never stops the others.
"""
from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from typing import TYPE_CHECKING, Any

from flask import current_app, has_app_context

from app.botconsole.modules.worktool.client import WorkToolError
from app.botconsole.modules.worktool.service import client_for

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.modules.alerts.models import AlertHistory, NotificationMethod

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    pass


def _webhook_timeout() -> int:
    if has_app_context():
        return int(current_app.config.get("ALERT_WEBHOOK_TIMEOUT_SECONDS") or 5)
    return 5


def post_webhook(url: str, payload: dict[str, Any], timeout_seconds: int) -> int:
    data = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            return resp.status
    except urllib.error.HTTPError as e:
        raise NotificationError(f"Webhook returned HTTP {e.code}") from e
    except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError, ValueError) as e:
        raise NotificationError(f"Webhook request failed: {e}") from e


def _send_robot(s: "Session", method: "NotificationMethod", alert: "AlertHistory", text: str) -> dict:
    from app.botconsole.modules.robots.models import Robot

    config = method.recipient_config or {}
    to_name = (config.get("to_name") or config.get("toName") or "").strip()
    robot_id = (config.get("robot_id") or config.get("robotId") or alert.robot_id or "").strip()
    if not to_name:
        raise NotificationError("recipient_config.to_name is required.")
    robot = s.query(Robot).filter(Robot.robot_id == robot_id).one_or_none() if robot_id else None
    if robot is None:
        raise NotificationError(f"Robot not found: {robot_id or '(none)'}")
    try:
        client_for(s, robot).send_raw_message(to_name, text)
    except WorkToolError as e:
        raise NotificationError(str(e)) from e
    return {"robot_id": robot.robot_id, "to_name": to_name}


def _send_webhook(method: "NotificationMethod", alert: "AlertHistory", text: str) -> dict:
    config = method.recipient_config or {}
    url = (config.get("url") or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        raise NotificationError("recipient_config.url must be an http(s) URL.")
    status = post_webhook(url, {"alert": alert.to_dict(), "text": text}, _webhook_timeout())
    return {"url": url, "http_status": status}


def _send_log(alert: "AlertHistory", text: str) -> dict:
    logger.warning("ALERT [%s] %s (alert_id=%s robot_id=%s)", alert.alert_level, text, alert.id, alert.robot_id)
    return {"logged": True}


def dispatch(s: "Session", alert: "AlertHistory", methods: list["NotificationMethod"], render) -> list[dict]:
    """
    Send `alert` through every enabled method. `render(template)` produces the text for a
    method-level template (falling back to the alert message). Returns per-method results.
    """
    results: list[dict] = []
    for method in sorted(methods, key=lambda m: (m.priority, m.id or 0)):
        if not method.is_enabled:
            continue
        text = render(method.message_template) if method.message_template else alert.alert_message
        entry: dict[str, Any] = {"method_id": method.id, "method_type": method.method_type}
        try:
            if method.method_type == "robot":
                entry.update(_send_robot(s, method, alert, text))
            elif method.method_type == "webhook":
                entry.update(_send_webhook(method, alert, text))
            elif method.method_type == "log":
                entry.update(_send_log(alert, text))
            else:
                raise NotificationError(f"Unknown method_type: {method.method_type}")
            entry["success"] = True
        except NotificationError as e:
            logger.warning("Alert notification failed alert_id=%s method_id=%s: %s", alert.id, method.id, e)
            entry["success"] = False
            entry["error"] = str(e)
        except Exception as e:
            logger.exception("Alert notification crashed alert_id=%s method_id=%s", alert.id, method.id)
            entry["success"] = False
            entry["error"] = f"{type(e).__name__}: {e}"
        results.append(entry)
    return results


def notification_status(results: list[dict]) -> str:
    if not results:
        return "pending"
    return "sent" if any(r.get("success") for r in results) else "failed"
