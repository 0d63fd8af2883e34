from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.botconsole.constants import AI_ACTIONS, DECISION_PRIORITIES, STAFF_ACTIONS
from app.botconsole.utils import clean_str, iso, parse_bool

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

REQUIRED_FIELDS = ("session_id", "message_id", "robot_id")
HUMAN_REPLY_ACTIONS = ("replied", "handled")
_ENUMS = {"ai_action": AI_ACTIONS, "staff_action": STAFF_ACTIONS, "priority": DECISION_PRIORITIES}


def validate_decision_payload(payload: Any, *, partial: bool = False) -> list[str]:
    if not isinstance(payload, dict):
        return ["Decision must be an object."]
    errors: list[str] = []
    if not partial:
        missing = [f for f in REQUIRED_FIELDS if not clean_str(payload.get(f))]
        if missing:
            errors.append(f"Missing required fields: {', '.join(missing)}")
    for field, allowed in _ENUMS.items():
        value = payload.get(field)
        if value not in (None, "") and value not in allowed:
            errors.append(f"Invalid {field}. Must be one of: {', '.join(allowed)}")
    for field in ("staff_context", "info_context"):
        if payload.get(field) is not None and not isinstance(payload.get(field), dict):
            errors.append(f"{field} must be an object.")
    return errors


def validate_batch(items: Any) -> list[str]:
    if not isinstance(items, list) or not items:
        return ["decisions must be a non-empty list."]
    errors: list[str] = []
    for i, item in enumerate(items):
        errors.extend(f"decisions[{i}]: {e}" for e in validate_decision_payload(item))
    return errors


def build_decision(payload: dict) -> "CollaborationDecisionLog":
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

    return CollaborationDecisionLog(
        session_id=clean_str(payload["session_id"]),
        message_id=clean_str(payload["message_id"]),
        robot_id=clean_str(payload["robot_id"]),
        should_ai_reply=parse_bool(payload.get("should_ai_reply")),
        ai_action=payload.get("ai_action") or "none",
        staff_action=payload.get("staff_action") or "none",
        priority=payload.get("priority") or "medium",
        reason=clean_str(payload.get("reason")),
        staff_context=payload.get("staff_context"),
        info_context=payload.get("info_context"),
        strategy=clean_str(payload.get("strategy")),
        staff_type=clean_str(payload.get("staff_type")),
        message_type=clean_str(payload.get("message_type")),
        created_at=datetime.utcnow(),
    )


def _ordered(q):
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

    return q.order_by(CollaborationDecisionLog.created_at.asc(), CollaborationDecisionLog.id.asc())


def latest_for_message(s: "Session", message_id: str) -> "CollaborationDecisionLog | None":
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

    return (
        s.query(CollaborationDecisionLog)
        .filter(CollaborationDecisionLog.message_id == message_id)
        .order_by(CollaborationDecisionLog.created_at.desc(), CollaborationDecisionLog.id.desc())
        .first()
    )


def latest_per_message(s: "Session", session_id: str) -> dict[str, "CollaborationDecisionLog"]:
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

    latest: dict[str, CollaborationDecisionLog] = {}
    for decision in _ordered(s.query(CollaborationDecisionLog).filter(CollaborationDecisionLog.session_id == session_id)):
        latest[decision.message_id] = decision
    return latest


def reply_type(decision: "CollaborationDecisionLog | None") -> str:
    if decision is None:
        return "none"
    if decision.ai_action == "replied":
        return "ai"
    if decision.staff_action in HUMAN_REPLY_ACTIONS:
        return "human"
    return "none"


def reply_status(decision: "CollaborationDecisionLog | None") -> dict:
    kind = reply_type(decision)
    return {
        "is_replied": kind != "none",
        "reply_type": kind,
        "decision_at": iso(decision.created_at) if decision else None,
        "ai_action": decision.ai_action if decision else None,
        "staff_action": decision.staff_action if decision else None,
        "priority": decision.priority if decision else None,
        "reason": decision.reason if decision else None,
    }


def apply_update(decision: "CollaborationDecisionLog", payload: dict) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for field in ("ai_action", "staff_action", "reason"):
        if field not in payload:
            continue
        value = clean_str(payload.get(field)) if field == "reason" else payload.get(field)
        if field != "reason" and not value:
            continue
        if getattr(decision, field) != value:
            changes[field] = {"old": getattr(decision, field), "new": value}
            setattr(decision, field, value)
    if changes:
        decision.updated_at = datetime.utcnow()
    return changes


def session_stats(s: "Session", session_id: str) -> dict:
    from app.botconsole.modules.decisions.models import CollaborationDecisionLog

    rows = s.query(CollaborationDecisionLog).filter(CollaborationDecisionLog.session_id == session_id).all()
    by_priority = {p: 0 for p in DECISION_PRIORITIES}
    for r in rows:
        by_priority[r.priority] = by_priority.get(r.priority, 0) + 1
    return {
        "session_id": session_id,
        "total": len(rows),
        "ai_replies": sum(1 for r in rows if r.ai_action == "replied"),
        "staff_replies": sum(1 for r in rows if r.staff_action in HUMAN_REPLY_ACTIONS),
        "skipped": sum(1 for r in rows if r.ai_action == "skipped"),
        "transferred": sum(1 for r in rows if r.ai_action == "transferred"),
        "by_priority": by_priority,
    }
