from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.decisions import service
from app.botconsole.modules.decisions.models import CollaborationDecisionLog
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys

bp = Blueprint("decisions", __name__)


@bp.post("/decisions")
@require_permission("decisions.record")
def decisions_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_decision_payload(payload)
    if errors:
        raise validation_failed(errors)
    decision = service.build_decision(payload)
    s.add(decision)
    s.flush()
    record_event(
        s,
        actor=current_user(),
        action="decision.create",
        entity_type="CollaborationDecisionLog",
        entity_id=str(decision.id),
        metadata={"session_id": decision.session_id, "message_id": decision.message_id},
    )
    s.commit()
    return ok(decision.to_dict(), 201)


@bp.post("/decisions/batch")
@require_permission("decisions.record")
def decisions_batch():
    s = db_session()
    body = request.get_json(silent=True)
    items = body.get("decisions") if isinstance(body, dict) else body
    if isinstance(items, list):
        items = [normalize_keys(i) if isinstance(i, dict) else i for i in items]
    errors = service.validate_batch(items)
    if errors:
        raise validation_failed(errors)

    decisions = [service.build_decision(item) for item in items]
    s.add_all(decisions)
    s.flush()
    record_event(
        s,
        actor=current_user(),
        action="decision.batch_create",
        entity_type="CollaborationDecisionLog",
        metadata={"count": len(decisions), "ids": [d.id for d in decisions]},
    )
    s.commit()
    return ok([d.to_dict() for d in decisions], 201, count=len(decisions))


@bp.get("/decisions")
@require_permission("decisions.view")
def decisions_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(CollaborationDecisionLog)
    for field in ("session_id", "robot_id", "message_id"):
        value = clean_str(request.args.get(field))
        if value:
            q = q.filter(getattr(CollaborationDecisionLog, field) == value)
    total = q.count()
    rows = (
        q.order_by(CollaborationDecisionLog.created_at.desc(), CollaborationDecisionLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return ok([d.to_dict() for d in rows], total=total)


@bp.get("/sessions/<path:session_id>/reply-status")
@require_permission("decisions.view")
def session_reply_status(session_id: str):
    latest = service.latest_per_message(db_session(), session_id)
    return ok({message_id: service.reply_status(d) for message_id, d in latest.items()})


@bp.get("/sessions/<path:session_id>/stats")
@require_permission("decisions.view")
def session_stats(session_id: str):
    return ok(service.session_stats(db_session(), session_id))


@bp.get("/messages/<path:message_id>/reply-status")
@require_permission("decisions.view")
def message_reply_status(message_id: str):
    decision = service.latest_for_message(db_session(), message_id)
    return ok({"message_id": message_id, **service.reply_status(decision)})


@bp.put("/messages/<path:message_id>")
@require_permission("decisions.record")
def message_update(message_id: str):
    s = db_session()
    decision = service.latest_for_message(s, message_id)
    if decision is None:
        raise ApiError("No decision recorded for this message", 404)
    payload = normalize_keys(json_body())
    errors = service.validate_decision_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    changes = service.apply_update(decision, payload)
    record_event(
        s,
        actor=current_user(),
        action="decision.update",
        entity_type="CollaborationDecisionLog",
        entity_id=str(decision.id),
        metadata={"message_id": message_id, "changes": changes},
    )
    s.commit()
    return ok(decision.to_dict())
