from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.flows import service
from app.botconsole.modules.flows.models import FlowDefinition, FlowInstance
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys, parse_bool, parse_int

bp = Blueprint("flows", __name__)


def _payload() -> dict:
    return service.normalize_definition_payload(normalize_keys(json_body()))


@bp.get("/definitions")
@require_permission("flows.view")
def definitions_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(FlowDefinition)
    active = parse_bool(request.args.get("is_active"))
    if active is not None:
        q = q.filter(FlowDefinition.is_active.is_(active))
    trigger_type = clean_str(request.args.get("trigger_type"))
    if trigger_type:
        q = q.filter(FlowDefinition.trigger_type == trigger_type)
    total = q.count()
    rows = q.order_by(FlowDefinition.updated_at.desc(), FlowDefinition.id.desc()).offset(offset).limit(limit).all()
    return ok([f.to_dict() for f in rows], total=total)


@bp.post("/definitions")
@require_permission("flows.edit")
def definitions_create():
    s = db_session()
    payload = _payload()
    errors = service.validate_definition_payload(payload)
    if errors:
        raise validation_failed(errors)
    flow = service.save_definition(s, None, payload, current_user())
    s.commit()
    return ok(flow.to_dict(), 201)


@bp.get("/definitions/default")
@require_permission("flows.view")
def definitions_default():
    trigger_type = clean_str(request.args.get("trigger_type"))
    if not trigger_type:
        raise ApiError("trigger_type is required.")
    flow = service.default_definition(db_session(), trigger_type)
    if flow is None:
        raise ApiError(f"No active flow for trigger_type {trigger_type}", 404)
    return ok(flow.to_dict())


@bp.get("/definitions/<int:flow_id>")
@require_permission("flows.view")
def definitions_get(flow_id: int):
    flow = get_or_404(db_session(), FlowDefinition, flow_id, "Flow definition")
    return ok(flow.to_dict())


@bp.put("/definitions/<int:flow_id>")
@require_permission("flows.edit")
def definitions_update(flow_id: int):
    s = db_session()
    flow = get_or_404(s, FlowDefinition, flow_id, "Flow definition")
    payload = _payload()
    errors = service.validate_definition_payload(payload, existing=flow)
    if errors:
        raise validation_failed(errors)
    service.save_definition(s, flow, payload, current_user())
    s.commit()
    return ok(flow.to_dict())


@bp.delete("/definitions/<int:flow_id>")
@require_permission("flows.edit")
def definitions_delete(flow_id: int):
    s = db_session()
    flow = get_or_404(s, FlowDefinition, flow_id, "Flow definition")
    running = service.running_instance_count(s, flow)
    if running:
        raise ApiError(f"Flow has {running} running instance(s).", 409)
    for instance in flow.instances:
        instance.flow_definition = None
    record_event(
        s,
        actor=current_user(),
        action="flow.delete",
        entity_type="FlowDefinition",
        entity_id=str(flow.id),
        metadata={"name": flow.name, "version": flow.version},
    )
    s.delete(flow)
    s.commit()
    return ok(None, message="Flow definition deleted.")


@bp.get("/instances")
@require_permission("flows.view")
def instances_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(FlowInstance)
    definition_id = parse_int(request.args.get("flow_definition_id"))
    if definition_id is not None:
        q = q.filter(FlowInstance.flow_definition_id == definition_id)
    status = clean_str(request.args.get("status"))
    if status:
        q = q.filter(FlowInstance.status == status)
    total = q.count()
    rows = q.order_by(FlowInstance.started_at.desc(), FlowInstance.id.desc()).offset(offset).limit(limit).all()
    return ok([i.to_dict() for i in rows], total=total)


@bp.get("/instances/<int:instance_id>")
@require_permission("flows.view")
def instances_get(instance_id: int):
    instance = get_or_404(db_session(), FlowInstance, instance_id, "Flow instance")
    return ok(instance.to_dict(with_logs=True))


@bp.get("/monitor")
@require_permission("flows.view")
def flows_monitor():
    hours = parse_int(request.args.get("hours"), 24)
    if hours is None or hours <= 0:
        hours = 24
    return ok(service.monitor(db_session(), min(hours, 24 * 90)))
