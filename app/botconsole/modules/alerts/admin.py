from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.alerts import service
from app.botconsole.modules.alerts.models import AlertGroup, AlertHistory, AlertRule, NotificationMethod
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys, parse_bool, parse_datetime

bp = Blueprint("alerts", __name__)


# ---------- Rules ----------
@bp.get("/rules")
@require_permission("alerts.view")
def rules_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(AlertRule)
    intent_type = clean_str(request.args.get("intent_type"))
    if intent_type:
        q = q.filter(AlertRule.intent_type == intent_type)
    enabled = parse_bool(request.args.get("is_enabled"))
    if enabled is not None:
        q = q.filter(AlertRule.is_enabled.is_(enabled))
    total = q.count()
    rows = q.order_by(AlertRule.id.asc()).offset(offset).limit(limit).all()
    return ok([r.to_dict(with_methods=True) for r in rows], total=total)


@bp.post("/rules")
@require_permission("alerts.edit")
def rules_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_rule_payload(payload)
    if errors:
        raise validation_failed(errors)
    rule = service.save_rule(s, None, payload, current_user())
    s.commit()
    return ok(rule.to_dict(with_methods=True), 201)


@bp.get("/rules/<int:rule_id>")
@require_permission("alerts.view")
def rules_get(rule_id: int):
    rule = get_or_404(db_session(), AlertRule, rule_id, "Alert rule")
    return ok(rule.to_dict(with_methods=True))


@bp.put("/rules/<int:rule_id>")
@require_permission("alerts.edit")
def rules_update(rule_id: int):
    s = db_session()
    rule = get_or_404(s, AlertRule, rule_id, "Alert rule")
    payload = normalize_keys(json_body())
    errors = service.validate_rule_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    service.save_rule(s, rule, payload, current_user())
    s.commit()
    return ok(rule.to_dict(with_methods=True))


@bp.delete("/rules/<int:rule_id>")
@require_permission("alerts.edit")
def rules_delete(rule_id: int):
    s = db_session()
    rule = get_or_404(s, AlertRule, rule_id, "Alert rule")
    record_event(
        s,
        actor=current_user(),
        action="alert_rule.delete",
        entity_type="AlertRule",
        entity_id=str(rule.id),
        metadata={"rule_name": rule.rule_name},
    )
    s.delete(rule)
    s.commit()
    return ok(None, message="Alert rule deleted.")


# ---------- Notification methods ----------
@bp.get("/rules/<int:rule_id>/notification-methods")
@require_permission("alerts.view")
def methods_list(rule_id: int):
    rule = get_or_404(db_session(), AlertRule, rule_id, "Alert rule")
    return ok([m.to_dict() for m in rule.notification_methods])


@bp.post("/rules/<int:rule_id>/notification-methods")
@require_permission("alerts.edit")
def methods_create(rule_id: int):
    s = db_session()
    rule = get_or_404(s, AlertRule, rule_id, "Alert rule")
    payload = normalize_keys(json_body())
    errors = service.validate_method_payload(payload)
    if errors:
        raise validation_failed(errors)
    method = service.save_method(s, rule, None, payload, current_user())
    s.commit()
    return ok(method.to_dict(), 201)


@bp.put("/notification-methods/<int:method_id>")
@require_permission("alerts.edit")
def methods_update(method_id: int):
    s = db_session()
    method = get_or_404(s, NotificationMethod, method_id, "Notification method")
    payload = normalize_keys(json_body())
    merged = {"method_type": method.method_type, "recipient_config": method.recipient_config or {}}
    merged.update(payload)
    errors = service.validate_method_payload(merged, partial=True)
    if errors:
        raise validation_failed(errors)
    service.save_method(s, method.rule, method, payload, current_user())
    s.commit()
    return ok(method.to_dict())


@bp.delete("/notification-methods/<int:method_id>")
@require_permission("alerts.edit")
def methods_delete(method_id: int):
    s = db_session()
    method = get_or_404(s, NotificationMethod, method_id, "Notification method")
    record_event(
        s,
        actor=current_user(),
        action="notification_method.delete",
        entity_type="NotificationMethod",
        entity_id=str(method.id),
        metadata={"rule_id": method.alert_rule_id},
    )
    s.delete(method)
    s.commit()
    return ok(None, message="Notification method deleted.")


# ---------- Groups ----------
@bp.get("/groups")
@require_permission("alerts.view")
def groups_list():
    limit, offset = paging()
    q = db_session().query(AlertGroup)
    total = q.count()
    rows = q.order_by(AlertGroup.sort_order.asc(), AlertGroup.id.asc()).offset(offset).limit(limit).all()
    return ok([g.to_dict() for g in rows], total=total)


def _group_conflict(s, payload: dict, exclude_id: int | None = None) -> None:
    for field in ("group_name", "group_code"):
        if field not in payload:
            continue
        q = s.query(AlertGroup).filter(getattr(AlertGroup, field) == payload[field].strip())
        if exclude_id is not None:
            q = q.filter(AlertGroup.id != exclude_id)
        if q.first() is not None:
            raise ApiError(f"Alert group with this {field} already exists.", 409)


@bp.post("/groups")
@require_permission("alerts.edit")
def groups_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_group_payload(payload)
    if errors:
        raise validation_failed(errors)
    _group_conflict(s, payload)
    group = service.save_group(s, None, payload, current_user())
    s.commit()
    return ok(group.to_dict(), 201)


@bp.put("/groups/<int:group_id>")
@require_permission("alerts.edit")
def groups_update(group_id: int):
    s = db_session()
    group = get_or_404(s, AlertGroup, group_id, "Alert group")
    payload = normalize_keys(json_body())
    errors = service.validate_group_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    _group_conflict(s, payload, exclude_id=group.id)
    service.save_group(s, group, payload, current_user())
    s.commit()
    return ok(group.to_dict())


@bp.delete("/groups/<int:group_id>")
@require_permission("alerts.edit")
def groups_delete(group_id: int):
    s = db_session()
    group = get_or_404(s, AlertGroup, group_id, "Alert group")
    for rule in s.query(AlertRule).filter(AlertRule.group_id == group.id).all():
        rule.group = None
    record_event(
        s,
        actor=current_user(),
        action="alert_group.delete",
        entity_type="AlertGroup",
        entity_id=str(group.id),
        metadata={"group_code": group.group_code},
    )
    s.delete(group)
    s.commit()
    return ok(None, message="Alert group deleted.")


# ---------- History ----------
@bp.get("/history")
@require_permission("alerts.view")
def history_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(AlertHistory)
    for field in ("status", "alert_level", "intent_type", "robot_id", "session_id"):
        value = clean_str(request.args.get(field))
        if value:
            q = q.filter(getattr(AlertHistory, field) == value)
    handled = parse_bool(request.args.get("is_handled"))
    if handled is not None:
        q = q.filter(AlertHistory.is_handled.is_(handled))
    try:
        since = parse_datetime(request.args.get("since"))
        until = parse_datetime(request.args.get("until"))
    except ValueError as e:
        raise ApiError(f"Invalid date filter: {e}") from e
    if since:
        q = q.filter(AlertHistory.created_at >= since)
    if until:
        q = q.filter(AlertHistory.created_at <= until)

    total = q.count()
    rows = q.order_by(AlertHistory.created_at.desc(), AlertHistory.id.desc()).offset(offset).limit(limit).all()
    return ok([a.to_dict() for a in rows], total=total)


@bp.get("/history/<int:alert_id>")
@require_permission("alerts.view")
def history_get(alert_id: int):
    alert = get_or_404(db_session(), AlertHistory, alert_id, "Alert")
    return ok(alert.to_dict())


@bp.post("/history/<int:alert_id>/handle")
@require_permission("alerts.handle")
def history_handle(alert_id: int):
    s = db_session()
    alert = get_or_404(s, AlertHistory, alert_id, "Alert")
    payload = normalize_keys(json_body())
    status = payload.get("status") or "handled"
    if status not in ("handled", "ignored"):
        raise ApiError("status must be 'handled' or 'ignored'.")
    try:
        service.handle_alert(alert, current_user(), note=clean_str(payload.get("note")), status=status)
    except ValueError as e:
        raise ApiError(str(e), 409) from e
    record_event(
        s,
        actor=current_user(),
        action=f"alert.{status}",
        entity_type="AlertHistory",
        entity_id=str(alert.id),
        metadata={"note": alert.handled_note},
    )
    s.commit()
    return ok(alert.to_dict())


@bp.post("/history/batch")
@require_permission("alerts.handle")
def history_batch():
    s = db_session()
    payload = normalize_keys(json_body())
    op = service.batch_handle(
        s,
        clean_str(payload.get("action")) or "",
        payload.get("alert_ids"),
        clean_str(payload.get("note")),
        current_user(),
    )
    s.commit()
    return ok(op.to_dict(), message=f"{op.success_count} of {op.total_count} alert(s) updated.")


# ---------- Trigger / stats / escalation ----------
@bp.post("/trigger")
@require_permission("alerts.handle")
def alerts_trigger():
    s = db_session()
    payload = normalize_keys(json_body())
    if not clean_str(payload.get("intent_type")) and not clean_str(payload.get("content")):
        raise ApiError("intent_type or content is required.")
    result = service.trigger_alert(s, payload)
    if result["triggered"]:
        record_event(
            s,
            actor=current_user(),
            action="alert.trigger",
            entity_type="AlertHistory",
            entity_id=str(result["alert"]["id"]),
            metadata={"rule_id": result["alert"]["rule_id"]},
        )
    s.commit()
    return ok(result)


@bp.get("/stats")
@require_permission("alerts.view")
def alerts_stats():
    return ok(service.alert_stats(db_session(), clean_str(request.args.get("range"))))


@bp.post("/escalate")
@require_permission("alerts.handle")
def alerts_escalate():
    s = db_session()
    result = service.escalate_due(s)
    record_event(
        s,
        actor=current_user(),
        action="alert.escalate",
        entity_type="AlertHistory",
        metadata={"checked": result["checked"], "escalated": result["escalated_count"]},
    )
    s.commit()
    return ok(result)
