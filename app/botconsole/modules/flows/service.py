from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.botconsole.audit import record_event
from app.botconsole.constants import FLOW_INSTANCE_STATUSES, FLOW_TRIGGER_TYPES
from app.botconsole.utils import clean_str, parse_bool, parse_int, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.models import User
    from app.botconsole.modules.flows.models import FlowDefinition

DEFAULT_TIMEOUT_MS = 30000
TOP_FAILING_NODES = 10


def normalize_definition_payload(payload: dict) -> dict:
    """Map the `status: active|inactive` wire field onto is_active."""
    out = dict(payload)
    if "status" in out and "is_active" not in out:
        status = out.pop("status")
        if status in ("active", "inactive"):
            out["is_active"] = status == "active"
        else:
            out["is_active"] = status
    return out


def _validate_nodes(nodes: Any, errors: list[str]) -> set[str]:
    if not isinstance(nodes, list):
        errors.append("nodes must be a list.")
        return set()
    ids: set[str] = set()
    for i, node in enumerate(nodes):
        if not isinstance(node, dict):
            errors.append(f"nodes[{i}] must be an object.")
            continue
        node_id = node.get("id")
        if not isinstance(node_id, str) or not node_id.strip():
            errors.append(f"nodes[{i}].id must be a non-empty string.")
            continue
        if node_id in ids:
            errors.append(f"Duplicate node id: {node_id}")
        ids.add(node_id)
        if not clean_str(node.get("type")):
            errors.append(f"nodes[{i}].type is required.")
    return ids


def _validate_edges(edges: Any, node_ids: set[str], errors: list[str]) -> None:
    if not isinstance(edges, list):
        errors.append("edges must be a list.")
        return
    for i, edge in enumerate(edges):
        if not isinstance(edge, dict):
            errors.append(f"edges[{i}] must be an object.")
            continue
        for end in ("source", "target"):
            ref = edge.get(end)
            if ref not in node_ids:
                errors.append(f"edges[{i}].{end} references unknown node: {ref}")


def validate_definition_payload(payload: dict, existing: "FlowDefinition | None" = None) -> list[str]:
    errors = text_errors(payload, "name", "description")
    partial = existing is not None
    if (not partial or "name" in payload) and not clean_str(payload.get("name")):
        errors.append("name is required.")
    if not partial or "trigger_type" in payload:
        if payload.get("trigger_type") not in FLOW_TRIGGER_TYPES:
            errors.append(f"Invalid trigger_type. Must be one of: {', '.join(FLOW_TRIGGER_TYPES)}")

    if "nodes" in payload:
        node_ids = _validate_nodes(payload.get("nodes"), errors)
    else:
        node_ids = {n.get("id") for n in (existing.nodes if existing else []) if isinstance(n, dict)}
    if "edges" in payload:
        _validate_edges(payload.get("edges"), node_ids, errors)
    elif "nodes" in payload and existing is not None:
        # existing edges must still point at surviving nodes
        _validate_edges(existing.edges or [], node_ids, errors)

    if payload.get("timeout") not in (None, ""):
        timeout = payload.get("timeout")
        if isinstance(timeout, bool) or parse_int(timeout) is None or parse_int(timeout) <= 0:
            errors.append("timeout must be a positive integer (ms).")
    for field in ("trigger_config", "variables", "retry_config"):
        if payload.get(field) is not None and not isinstance(payload.get(field), dict):
            errors.append(f"{field} must be an object.")
    if "is_active" in payload and parse_bool(payload.get("is_active")) is None:
        errors.append("is_active must be a boolean (or status active|inactive).")
    return errors


def bump_minor_version(version: str | None) -> str:
    major, _, minor = (version or "1.0").partition(".")
    try:
        return f"{int(major)}.{int(minor or 0) + 1}"
    except ValueError:
        return "1.1"


def _clear_other_defaults(s: "Session", flow: "FlowDefinition") -> None:
    from app.botconsole.modules.flows.models import FlowDefinition

    q = s.query(FlowDefinition).filter(
        FlowDefinition.trigger_type == flow.trigger_type,
        FlowDefinition.is_default.is_(True),
    )
    if flow.id is not None:
        q = q.filter(FlowDefinition.id != flow.id)
    for other in q.all():
        other.is_default = False


def save_definition(s: "Session", flow: "FlowDefinition | None", payload: dict, user: "User") -> "FlowDefinition":
    from app.botconsole.modules.flows.models import DEFAULT_RETRY_CONFIG, FlowDefinition

    now = datetime.utcnow()
    creating = flow is None
    if creating:
        flow = FlowDefinition(
            version="1.0",
            is_active=True,
            is_default=False,
            nodes=[],
            edges=[],
            timeout=DEFAULT_TIMEOUT_MS,
            retry_config=dict(DEFAULT_RETRY_CONFIG),
            created_by=user.username,
            created_at=now,
        )
        s.add(flow)

    structure_changed = False
    if "name" in payload:
        flow.name = payload["name"].strip()
    if "description" in payload:
        flow.description = clean_str(payload.get("description"))
    if "trigger_type" in payload:
        flow.trigger_type = payload["trigger_type"]
    for field in ("nodes", "edges"):
        if field in payload:
            value = payload.get(field) or []
            if not creating and value != (getattr(flow, field) or []):
                structure_changed = True
            setattr(flow, field, value)
    for field in ("trigger_config", "variables"):
        if field in payload:
            setattr(flow, field, payload.get(field))
    if "retry_config" in payload:
        flow.retry_config = payload.get("retry_config") or dict(DEFAULT_RETRY_CONFIG)
    if payload.get("timeout") not in (None, ""):
        flow.timeout = parse_int(payload.get("timeout"), DEFAULT_TIMEOUT_MS)
    if "is_active" in payload:
        flow.is_active = bool(parse_bool(payload.get("is_active"), True))
    if "is_default" in payload:
        flow.is_default = bool(parse_bool(payload.get("is_default"), False))

    if structure_changed:
        flow.version = bump_minor_version(flow.version)
    flow.updated_at = now
    s.flush()
    if flow.is_default:
        _clear_other_defaults(s, flow)

    record_event(
        s,
        actor=user,
        action="flow.create" if creating else "flow.update",
        entity_type="FlowDefinition",
        entity_id=str(flow.id),
        metadata={"name": flow.name, "version": flow.version, "trigger_type": flow.trigger_type},
    )
    return flow


def default_definition(s: "Session", trigger_type: str) -> "FlowDefinition | None":
    from app.botconsole.modules.flows.models import FlowDefinition

    base = s.query(FlowDefinition).filter(
        FlowDefinition.trigger_type == trigger_type,
        FlowDefinition.is_active.is_(True),
    )
    flow = base.filter(FlowDefinition.is_default.is_(True)).order_by(FlowDefinition.updated_at.desc()).first()
    if flow is None:
        flow = base.order_by(FlowDefinition.updated_at.desc(), FlowDefinition.id.desc()).first()
    return flow


def running_instance_count(s: "Session", flow: "FlowDefinition") -> int:
    from app.botconsole.modules.flows.models import FlowInstance

    return (
        s.query(FlowInstance)
        .filter(FlowInstance.flow_definition_id == flow.id, FlowInstance.status == "running")
        .count()
    )


def monitor(s: "Session", hours: int, now: datetime | None = None) -> dict:
    from app.botconsole.modules.flows.models import FlowExecutionLog, FlowInstance

    now = now or datetime.utcnow()
    since = now - timedelta(hours=hours)
    recent = s.query(FlowInstance).filter(FlowInstance.started_at >= since)

    counts = dict(
        recent.with_entities(FlowInstance.status, func.count(FlowInstance.id)).group_by(FlowInstance.status).all()
    )
    by_status = {status: int(counts.get(status, 0)) for status in FLOW_INSTANCE_STATUSES}
    total = sum(int(v) for v in counts.values())

    avg_time = (
        recent.filter(FlowInstance.processing_time.isnot(None))
        .with_entities(func.avg(FlowInstance.processing_time))
        .scalar()
    )
    finished = total - by_status["running"]
    success_rate = round(by_status["completed"] * 100.0 / finished, 2) if finished else 0.0

    failing = (
        s.query(FlowExecutionLog.node_id, FlowExecutionLog.node_type, func.count(FlowExecutionLog.id).label("failures"))
        .join(FlowInstance, FlowInstance.id == FlowExecutionLog.instance_id)
        .filter(FlowInstance.started_at >= since, FlowExecutionLog.status == "failed")
        .group_by(FlowExecutionLog.node_id, FlowExecutionLog.node_type)
        .order_by(func.count(FlowExecutionLog.id).desc(), FlowExecutionLog.node_id.asc())
        .limit(TOP_FAILING_NODES)
        .all()
    )
    return {
        "hours": hours,
        "since": since.isoformat(),
        "total": total,
        "by_status": by_status,
        "avg_processing_time": round(float(avg_time), 2) if avg_time is not None else None,
        "success_rate": success_rate,
        "top_failing_nodes": [
            {"node_id": node_id, "node_type": node_type, "failures": int(failures)}
            for node_id, node_type, failures in failing
        ],
    }
