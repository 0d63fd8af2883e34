from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.botconsole.audit import record_event
from app.botconsole.constants import COMMAND_STATUSES, COMMAND_TERMINAL_STATUSES, COMMAND_TYPES
from app.botconsole.utils import clean_str, parse_datetime, parse_int, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.models import User
    from app.botconsole.modules.commands.models import RobotCommand
    from app.botconsole.modules.robots.models import Robot

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
BATCH_ACTIONS = ("cancel", "retry", "priority")
CANCELLABLE_STATUSES = ("pending", "processing")


class CommandStateError(ValueError):
    """Command is not in a state that allows the requested transition."""


def _valid_priority(value: Any) -> int | None:
    p = parse_int(value)
    if p is None or not (MIN_PRIORITY <= p <= MAX_PRIORITY):
        return None
    return p


def validate_command_payload(payload: dict) -> list[str]:
    errors = text_errors(payload, "robot_id")
    if not clean_str(payload.get("robot_id")):
        errors.append("robot_id is required.")
    command_type = payload.get("command_type")
    if command_type not in COMMAND_TYPES:
        errors.append(f"Invalid command_type. Must be one of: {', '.join(COMMAND_TYPES)}")
    data = payload.get("command_data")
    if data is None:
        errors.append("command_data is required.")
    elif not isinstance(data, dict):
        errors.append("command_data must be an object.")
    if payload.get("priority") not in (None, "") and _valid_priority(payload.get("priority")) is None:
        errors.append(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}.")
    if payload.get("scheduled_for"):
        try:
            parse_datetime(payload.get("scheduled_for"))
        except ValueError:
            errors.append("scheduled_for must be an ISO-8601 datetime.")
    return errors


def _enqueue(s: "Session", cmd: "RobotCommand", scheduled_for: datetime | None = None) -> None:
    from app.botconsole.modules.commands.models import RobotCommandQueue

    s.add(
        RobotCommandQueue(
            command=cmd,
            robot_id=cmd.robot_id,
            priority=cmd.priority,
            status="pending",
            scheduled_for=scheduled_for or datetime.utcnow(),
            retry_count=cmd.retry_count,
        )
    )


def _sync_queue(cmd: "RobotCommand", status: str | None = None, priority: int | None = None) -> None:
    for entry in cmd.queue_entries:
        if entry.status in COMMAND_TERMINAL_STATUSES:
            continue
        if status is not None:
            entry.status = status
        if priority is not None:
            entry.priority = priority


def create_command(s: "Session", robot: "Robot", payload: dict, user: "User") -> "RobotCommand":
    """Create a command for an active, online robot and enqueue it."""
    from app.botconsole.modules.commands.models import RobotCommand

    if not robot.is_active:
        raise CommandStateError("Robot is not active.")
    if robot.status != "online":
        raise CommandStateError(f"Robot is not online (status: {robot.status}).")

    now = datetime.utcnow()
    cmd = RobotCommand(
        robot_id=robot.robot_id,
        command_type=payload["command_type"],
        command_data=payload["command_data"],
        priority=_valid_priority(payload.get("priority")) or DEFAULT_PRIORITY,
        status="pending",
        retry_count=0,
        max_retries=parse_int(payload.get("max_retries"), 3),
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(cmd)
    _enqueue(s, cmd, parse_datetime(payload.get("scheduled_for")))
    s.flush()

    record_event(
        s,
        actor=user,
        action="command.create",
        entity_type="RobotCommand",
        entity_id=str(cmd.id),
        metadata={"robot_id": cmd.robot_id, "command_type": cmd.command_type, "priority": cmd.priority},
    )
    return cmd


def cancel_command(cmd: "RobotCommand") -> None:
    if cmd.status not in CANCELLABLE_STATUSES:
        raise CommandStateError(f"Only pending or processing commands can be cancelled (status: {cmd.status}).")
    now = datetime.utcnow()
    cmd.status = "cancelled"
    cmd.completed_at = now
    cmd.updated_at = now
    _sync_queue(cmd, status="cancelled")


def retry_command(s: "Session", cmd: "RobotCommand") -> None:
    if cmd.status != "failed":
        raise CommandStateError(f"Only failed commands can be retried (status: {cmd.status}).")
    if cmd.retry_count >= cmd.max_retries:
        raise CommandStateError(f"Retry limit reached ({cmd.retry_count}/{cmd.max_retries}).")
    cmd.status = "pending"
    cmd.retry_count += 1
    cmd.error_message = None
    cmd.completed_at = None
    cmd.updated_at = datetime.utcnow()
    _enqueue(s, cmd)


def set_priority(cmd: "RobotCommand", priority: int) -> None:
    cmd.priority = priority
    cmd.updated_at = datetime.utcnow()
    _sync_queue(cmd, priority=priority)


def batch_update(s: "Session", action: str, command_ids: list, data: dict | None, user: "User") -> dict:
    """
    Apply one action to many commands. Ineligible commands are skipped (with a reason),
    never failing the whole batch. Writes one summary audit event.
    """
    from app.botconsole.modules.commands.models import RobotCommand

    if action not in BATCH_ACTIONS:
        raise ValueError(f"Invalid action. Must be one of: {', '.join(BATCH_ACTIONS)}")
    if not isinstance(command_ids, list) or not command_ids:
        raise ValueError("command_ids must be a non-empty list.")
    ids = [parse_int(i) for i in command_ids]
    if any(i is None for i in ids):
        raise ValueError("command_ids must be integers.")

    priority = None
    if action == "priority":
        priority = _valid_priority((data or {}).get("priority"))
        if priority is None:
            raise ValueError(f"data.priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}.")

    commands = {c.id: c for c in s.query(RobotCommand).filter(RobotCommand.id.in_(ids)).all()}
    updated: list[int] = []
    skipped: list[dict] = []
    for cid in ids:
        cmd = commands.get(cid)
        if cmd is None:
            skipped.append({"id": cid, "reason": "not found"})
            continue
        try:
            if action == "cancel":
                cancel_command(cmd)
            elif action == "retry":
                retry_command(s, cmd)
            else:
                set_priority(cmd, priority)
        except CommandStateError as e:
            skipped.append({"id": cid, "reason": str(e)})
            continue
        updated.append(cid)

    record_event(
        s,
        actor=user,
        action=f"command.batch_{action}",
        entity_type="RobotCommand",
        metadata={"requested": ids, "updated": updated, "skipped": len(skipped), "priority": priority},
    )
    return {"action": action, "updated": updated, "updated_count": len(updated), "skipped": skipped}


def record_outcome(cmd: "RobotCommand", payload: dict) -> dict:
    """Record an execution result reported by the executor or an operator."""
    status = payload.get("status")
    if status not in COMMAND_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(COMMAND_STATUSES)}")
    if "result" in payload and payload["result"] is not None and not isinstance(payload["result"], dict):
        raise ValueError("result must be an object.")

    now = datetime.utcnow()
    old_status = cmd.status
    cmd.status = status
    if "result" in payload:
        cmd.result = payload.get("result")
    if "error_message" in payload:
        cmd.error_message = clean_str(payload.get("error_message"))
    if "message_id" in payload:
        cmd.message_id = clean_str(payload.get("message_id"))
    if status == "processing" and cmd.executed_at is None:
        cmd.executed_at = now
    if status in COMMAND_TERMINAL_STATUSES:
        cmd.completed_at = now
        if cmd.executed_at is None:
            cmd.executed_at = now
    else:
        cmd.completed_at = None
    cmd.updated_at = now
    _sync_queue(cmd, status=status)
    return {"old": old_status, "new": status}


def command_stats(s: "Session", robot_id: str | None = None) -> dict[str, int]:
    from sqlalchemy import func

    from app.botconsole.modules.commands.models import RobotCommand

    q = s.query(RobotCommand.status, func.count(RobotCommand.id))
    if robot_id:
        q = q.filter(RobotCommand.robot_id == robot_id)
    counts = dict(q.group_by(RobotCommand.status).all())
    stats = {status: int(counts.get(status, 0)) for status in COMMAND_STATUSES}
    stats["total"] = sum(stats.values())
    return stats
