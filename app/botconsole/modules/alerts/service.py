from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.botconsole.audit import record_event
from app.botconsole.constants import ALERT_LEVEL_TEXT, ALERT_LEVELS, NOTIFICATION_METHOD_TYPES
from app.botconsole.modules.alerts.notify import dispatch, notification_status
from app.botconsole.utils import clean_str, parse_bool, parse_int, split_csv, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.models import User
    from app.botconsole.modules.alerts.models import AlertBatchOperation, AlertGroup, AlertHistory, AlertRule, NotificationMethod

logger = logging.getLogger(__name__)

DEFAULT_ALERT_MESSAGE = "检测到告警"
UNKNOWN_USER = "未知用户"
UNKNOWN_GROUP = "未知群组"
STATS_RANGES = {"24h": timedelta(hours=24), "7d": timedelta(days=7), "30d": timedelta(days=30)}
DEFAULT_STATS_RANGE = "7d"
BATCH_ACTIONS = {"handle": "handled", "ignore": "ignored"}
_GROUP_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_WEBHOOK_URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


# ---------- Rules ----------
def validate_rule_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "intent_type", "rule_name", "message_template")
    if (not partial or "intent_type" in payload) and not clean_str(payload.get("intent_type")):
        errors.append("intent_type is required.")
    if (not partial or "rule_name" in payload) and not clean_str(payload.get("rule_name")):
        errors.append("rule_name is required.")
    level = payload.get("alert_level")
    if level not in (None, "") and level not in ALERT_LEVELS:
        errors.append(f"Invalid alert_level. Must be one of: {', '.join(ALERT_LEVELS)}")
    for field in ("threshold", "cooldown_period", "escalation_threshold", "escalation_interval"):
        if payload.get(field) not in (None, ""):
            value = parse_int(payload.get(field))
            if value is None or value < 0:
                errors.append(f"{field} must be a non-negative integer.")
    keywords = payload.get("keywords")
    if keywords is not None and not isinstance(keywords, (str, list)):
        errors.append("keywords must be a string or a list.")
    config = payload.get("escalation_config")
    if config is not None and not isinstance(config, dict):
        errors.append("escalation_config must be an object.")
    return errors


_RULE_INT_DEFAULTS = {
    "threshold": 1,
    "cooldown_period": 300,
    "escalation_threshold": 3,
    "escalation_interval": 1800,
}


def save_rule(s: "Session", rule: "AlertRule | None", payload: dict, user: "User") -> "AlertRule":
    from app.botconsole.modules.alerts.models import AlertGroup, AlertRule

    now = datetime.utcnow()
    creating = rule is None
    if creating:
        rule = AlertRule(created_at=now, is_enabled=True, alert_level="warning", enable_escalation=False)
        for field, default in _RULE_INT_DEFAULTS.items():
            setattr(rule, field, default)
        s.add(rule)

    if creating or "intent_type" in payload:
        rule.intent_type = payload["intent_type"].strip()
    if creating or "rule_name" in payload:
        rule.rule_name = payload["rule_name"].strip()
    if payload.get("alert_level"):
        rule.alert_level = payload["alert_level"]
    if "is_enabled" in payload:
        rule.is_enabled = bool(parse_bool(payload.get("is_enabled"), True))
    if "enable_escalation" in payload:
        rule.enable_escalation = bool(parse_bool(payload.get("enable_escalation"), False))
    for field, default in _RULE_INT_DEFAULTS.items():
        if field in payload:
            setattr(rule, field, parse_int(payload.get(field), default))
    if "message_template" in payload:
        rule.message_template = clean_str(payload.get("message_template"))
    if "keywords" in payload:
        raw = payload.get("keywords")
        if isinstance(raw, list):
            raw = ",".join(str(k) for k in raw)
        rule.keywords = ",".join(split_csv(raw)) or None
    if "escalation_config" in payload:
        rule.escalation_config = payload.get("escalation_config")
    if "group_id" in payload:
        group_id = parse_int(payload.get("group_id"))
        group = s.get(AlertGroup, group_id) if group_id is not None else None
        if group_id is not None and group is None:
            raise ValueError("Alert group not found.")
        rule.group = group
    rule.updated_at = now
    s.flush()

    record_event(
        s,
        actor=user,
        action="alert_rule.create" if creating else "alert_rule.update",
        entity_type="AlertRule",
        entity_id=str(rule.id),
        metadata={"rule_name": rule.rule_name, "intent_type": rule.intent_type},
    )
    return rule


# ---------- Groups ----------
def validate_group_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "group_name", "group_code")
    if (not partial or "group_name" in payload) and not clean_str(payload.get("group_name")):
        errors.append("group_name is required.")
    if not partial or "group_code" in payload:
        code = payload.get("group_code")
        if not isinstance(code, str) or not _GROUP_CODE_RE.match(code.strip()):
            errors.append("group_code must be 1-64 letters, digits, '_' or '-'.")
    return errors


def save_group(s: "Session", group: "AlertGroup | None", payload: dict, user: "User") -> "AlertGroup":
    from app.botconsole.modules.alerts.models import AlertGroup

    now = datetime.utcnow()
    creating = group is None
    if creating:
        group = AlertGroup(created_at=now, sort_order=0, is_active=True)
        s.add(group)
    if creating or "group_name" in payload:
        group.group_name = payload["group_name"].strip()
    if creating or "group_code" in payload:
        group.group_code = payload["group_code"].strip()
    if "group_color" in payload:
        group.group_color = clean_str(payload.get("group_color"))
    if "description" in payload:
        group.description = clean_str(payload.get("description"))
    if "sort_order" in payload:
        group.sort_order = parse_int(payload.get("sort_order"), 0)
    if "is_active" in payload:
        group.is_active = bool(parse_bool(payload.get("is_active"), True))
    group.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="alert_group.create" if creating else "alert_group.update",
        entity_type="AlertGroup",
        entity_id=str(group.id),
        metadata={"group_code": group.group_code},
    )
    return group


# ---------- Notification methods ----------
def validate_method_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []
    method_type = payload.get("method_type")
    if (not partial or "method_type" in payload) and method_type not in NOTIFICATION_METHOD_TYPES:
        errors.append(f"Invalid method_type. Must be one of: {', '.join(NOTIFICATION_METHOD_TYPES)}")
    config = payload.get("recipient_config")
    if config is not None and not isinstance(config, dict):
        errors.append("recipient_config must be an object.")
    elif method_type == "webhook":
        url = (config or {}).get("url")
        if not url:
            errors.append("recipient_config.url is required for webhook methods.")
        elif not isinstance(url, str) or not _WEBHOOK_URL_RE.match(url.strip()):
            errors.append("recipient_config.url must be an http(s) URL without spaces.")
    elif method_type == "robot" and not ((config or {}).get("to_name") or (config or {}).get("toName")):
        errors.append("recipient_config.to_name is required for robot methods.")
    return errors


def save_method(
    s: "Session", rule: "AlertRule", method: "NotificationMethod | None", payload: dict, user: "User"
) -> "NotificationMethod":
    from app.botconsole.modules.alerts.models import NotificationMethod

    now = datetime.utcnow()
    creating = method is None
    if creating:
        method = NotificationMethod(created_at=now, is_enabled=True, priority=10)
        rule.notification_methods.append(method)
    if "method_type" in payload:
        method.method_type = payload["method_type"]
    if "recipient_config" in payload:
        method.recipient_config = payload.get("recipient_config") or {}
    if "message_template" in payload:
        method.message_template = clean_str(payload.get("message_template"))
    if "priority" in payload:
        method.priority = parse_int(payload.get("priority"), 10)
    if "is_enabled" in payload:
        method.is_enabled = bool(parse_bool(payload.get("is_enabled"), True))
    method.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="notification_method.create" if creating else "notification_method.update",
        entity_type="NotificationMethod",
        entity_id=str(method.id),
        metadata={"rule_id": rule.id, "method_type": method.method_type},
    )
    return method


# ---------- Triggering ----------
def render_message(template: str | None, context: dict[str, Any], alert_level: str, now: datetime | None = None) -> str:
    if not template:
        return DEFAULT_ALERT_MESSAGE
    now = now or datetime.utcnow()
    intent_type = context.get("intent_type") or ""
    values = {
        "{userName}": context.get("user_name") or UNKNOWN_USER,
        "{groupName}": context.get("group_name") or UNKNOWN_GROUP,
        "{messageContent}": context.get("content") or "",
        "{intent}": context.get("intent") or intent_type,
        "{intentType}": intent_type,
        "{alertLevel}": ALERT_LEVEL_TEXT.get(alert_level, alert_level),
        "{timestamp}": now.strftime("%Y-%m-%d %H:%M:%S"),
    }
    text = template
    for placeholder, value in values.items():
        text = text.replace(placeholder, str(value))
    return text


def dedup_key(rule_id: int, robot_id: str | None, user_id: str | None, session_id: str | None) -> str:
    raw = f"{rule_id}|{robot_id or ''}|{user_id or ''}|{session_id or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def find_rule(s: "Session", intent_type: str | None, content: str | None) -> "AlertRule | None":
    """Rule for the intent type; without one, the first enabled rule whose keywords occur in the content."""
    from app.botconsole.modules.alerts.models import AlertRule

    q = s.query(AlertRule).filter(AlertRule.is_enabled.is_(True)).order_by(AlertRule.id.asc())
    if intent_type:
        return q.filter(AlertRule.intent_type == intent_type).first()
    text = (content or "").lower()
    if not text:
        return None
    for rule in q.filter(AlertRule.keywords.isnot(None)).all():
        if any(kw.lower() in text for kw in split_csv(rule.keywords)):
            return rule
    return None


def _context_for(alert: "AlertHistory") -> dict[str, Any]:
    return {
        "intent_type": alert.intent_type,
        "user_name": alert.user_name,
        "group_name": alert.group_name,
        "content": alert.message_content,
    }


def trigger_alert(s: "Session", context: dict[str, Any], now: datetime | None = None) -> dict:
    """
    Evaluate and (maybe) raise an alert for a message context:
    intent_type, session_id, user_id, user_name, group_name, content, robot_id.
    """
    from app.botconsole.modules.alerts.models import AlertDedupRecord, AlertHistory

    now = now or datetime.utcnow()
    rule = find_rule(s, clean_str(context.get("intent_type")), context.get("content"))
    if rule is None:
        return {"triggered": False, "reason": "no_rule"}

    key = dedup_key(rule.id, context.get("robot_id"), context.get("user_id"), context.get("session_id"))
    record = s.query(AlertDedupRecord).filter(AlertDedupRecord.dedup_key == key).one_or_none()
    if record is not None and (now - record.last_trigger_at).total_seconds() < (rule.cooldown_period or 0):
        record.trigger_count += 1
        record.suppressed_count += 1
        return {"triggered": False, "reason": "cooldown", "rule_id": rule.id, "last_alert_id": record.last_alert_id}

    ctx = dict(context)
    if not ctx.get("intent_type"):
        ctx["intent_type"] = rule.intent_type

    alert = AlertHistory(
        session_id=clean_str(context.get("session_id")),
        rule_id=rule.id,
        rule=rule,
        intent_type=ctx["intent_type"],
        alert_level=rule.alert_level,
        group_id=rule.group_id,
        user_id=clean_str(context.get("user_id")),
        user_name=clean_str(context.get("user_name")),
        group_name=clean_str(context.get("group_name")),
        robot_id=clean_str(context.get("robot_id")),
        message_content=context.get("content"),
        alert_message=render_message(rule.message_template, ctx, rule.alert_level, now),
        notification_status="pending",
        status="pending",
        is_handled=False,
        escalation_level=0,
        escalation_history=[],
        created_at=now,
    )
    s.add(alert)
    s.flush()

    if record is None:
        record = AlertDedupRecord(dedup_key=key, rule_id=rule.id, first_alert_id=alert.id, trigger_count=0, suppressed_count=0)
        s.add(record)
    record.last_alert_id = alert.id
    record.trigger_count += 1
    record.last_trigger_at = now

    results = dispatch(s, alert, rule.notification_methods, lambda tpl: render_message(tpl, ctx, rule.alert_level, now))
    alert.notification_result = {"results": results}
    alert.notification_status = notification_status(results)
    logger.info(
        "Alert raised id=%s rule_id=%s level=%s notification=%s", alert.id, rule.id, alert.alert_level, alert.notification_status
    )
    return {"triggered": True, "alert": alert.to_dict()}


# ---------- Handling ----------
def handle_alert(alert: "AlertHistory", user: "User", *, note: str | None = None, status: str = "handled") -> None:
    if alert.is_handled or alert.status != "pending":
        raise ValueError(f"Alert {alert.id} is already {alert.status}.")
    alert.status = status
    alert.is_handled = True
    alert.handled_by = user.username
    alert.handled_at = datetime.utcnow()
    alert.handled_note = note


def batch_handle(s: "Session", action: str, alert_ids: list, note: str | None, user: "User") -> "AlertBatchOperation":
    from app.botconsole.modules.alerts.models import AlertBatchOperation, AlertHistory

    if action not in BATCH_ACTIONS:
        raise ValueError(f"Invalid action. Must be one of: {', '.join(BATCH_ACTIONS)}")
    if not isinstance(alert_ids, list) or not alert_ids:
        raise ValueError("alert_ids must be a non-empty list.")
    ids = [parse_int(i) for i in alert_ids]
    if any(i is None for i in ids):
        raise ValueError("alert_ids must be integers.")

    alerts = {a.id: a for a in s.query(AlertHistory).filter(AlertHistory.id.in_(ids)).all()}
    succeeded: list[int] = []
    failures: list[dict] = []
    for aid in ids:
        alert = alerts.get(aid)
        if alert is None:
            failures.append({"id": aid, "reason": "not found"})
            continue
        try:
            handle_alert(alert, user, note=note, status=BATCH_ACTIONS[action])
        except ValueError as e:
            failures.append({"id": aid, "reason": str(e)})
            continue
        succeeded.append(aid)

    op = AlertBatchOperation(
        operation_type=action,
        alert_ids=ids,
        total_count=len(ids),
        success_count=len(succeeded),
        failed_count=len(failures),
        note=note,
        operated_by_user_id=user.id,
    )
    s.add(op)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"alert.batch_{action}",
        entity_type="AlertBatchOperation",
        entity_id=str(op.id),
        metadata={"succeeded": succeeded, "failed": failures},
    )
    return op


# ---------- Stats ----------
def alert_stats(s: "Session", range_key: str | None, now: datetime | None = None) -> dict:
    from app.botconsole.modules.alerts.models import AlertHistory

    range_key = range_key if range_key in STATS_RANGES else DEFAULT_STATS_RANGE
    now = now or datetime.utcnow()
    since = now - STATS_RANGES[range_key]
    base = s.query(AlertHistory).filter(AlertHistory.created_at >= since)

    def _grouped(column) -> dict[str, int]:
        rows = base.with_entities(column, func.count(AlertHistory.id)).group_by(column).all()
        return {k: int(v) for k, v in rows}

    total = base.count()
    handled = base.filter(AlertHistory.is_handled.is_(True)).count()
    by_level = _grouped(AlertHistory.alert_level)
    return {
        "range": range_key,
        "since": since.isoformat(),
        "total": total,
        "by_level": {level: by_level.get(level, 0) for level in ALERT_LEVELS},
        "handled": handled,
        "unhandled": total - handled,
        "by_status": _grouped(AlertHistory.status),
        "by_notification_status": _grouped(AlertHistory.notification_status),
        "by_intent_type": _grouped(AlertHistory.intent_type),
    }


# ---------- Escalation ----------
def _due_for_escalation(alert: "AlertHistory", now: datetime) -> bool:
    rule = alert.rule
    if rule is None or not rule.enable_escalation:
        return False
    if alert.escalation_level >= rule.escalation_threshold:
        return False
    since = alert.last_escalated_at or alert.created_at
    return (now - since).total_seconds() >= rule.escalation_interval


def escalate_due(s: "Session", now: datetime | None = None) -> dict:
    """
    Escalate every pending, unhandled alert whose rule allows it and whose interval has elapsed.
    Each escalation bumps the level, appends to escalation_history, and re-sends notifications.
    """
    from app.botconsole.modules.alerts.models import AlertHistory, AlertRule

    now = now or datetime.utcnow()
    candidates = (
        s.query(AlertHistory)
        .join(AlertRule, AlertRule.id == AlertHistory.rule_id)
        .filter(
            AlertHistory.status == "pending",
            AlertHistory.is_handled.is_(False),
            AlertRule.enable_escalation.is_(True),
        )
        .order_by(AlertHistory.created_at.asc())
        .all()
    )

    escalated: list[dict] = []
    for alert in candidates:
        if not _due_for_escalation(alert, now):
            continue
        rule = alert.rule
        old_level = alert.escalation_level
        alert.escalation_level = old_level + 1
        alert.last_escalated_at = now
        ctx = _context_for(alert)
        results = dispatch(s, alert, rule.notification_methods, lambda tpl: render_message(tpl, ctx, alert.alert_level, now))
        status = notification_status(results)
        if results:
            alert.notification_status = status
            alert.notification_result = {"results": results}
        # reassign so the JSON column is flagged dirty
        alert.escalation_history = list(alert.escalation_history or []) + [
            {
                "from_level": old_level,
                "to_level": alert.escalation_level,
                "at": now.isoformat(),
                "reason": "auto",
                "notification_status": status,
            }
        ]
        escalated.append({"alert_id": alert.id, "from_level": old_level, "to_level": alert.escalation_level})

    if escalated:
        logger.info("Escalated %d alert(s)", len(escalated))
    return {"checked": len(candidates), "escalated": escalated, "escalated_count": len(escalated)}
