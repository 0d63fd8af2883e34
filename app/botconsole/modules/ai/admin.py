from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.ai import service
from app.botconsole.modules.ai.models import AIIoLog, AIModel, AIProvider
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys, parse_bool, parse_datetime, parse_int

bp = Blueprint("ai", __name__)


def _query_filters() -> dict:
    filters = request.args.to_dict()
    for key in ("start", "end"):
        try:
            parse_datetime(filters.get(key))
        except ValueError as e:
            raise ApiError(f"Invalid {key} date: {e}") from e
    return filters


def _ensure_unique(s, model, field: str, value: str, exclude_id: int | None = None) -> None:
    q = s.query(model).filter(getattr(model, field) == value)
    if exclude_id is not None:
        q = q.filter(model.id != exclude_id)
    if q.first() is not None:
        raise ApiError(f"{field} already exists: {value}", 409)


# ---------- Providers ----------
@bp.get("/providers")
@require_permission("ai.view")
def providers_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(AIProvider)
    active = parse_bool(request.args.get("is_active"))
    if active is not None:
        q = q.filter(AIProvider.is_active.is_(active))
    total = q.count()
    rows = q.order_by(AIProvider.provider_id.asc()).offset(offset).limit(limit).all()
    return ok([p.to_dict() for p in rows], total=total)


@bp.post("/providers")
@require_permission("ai.edit")
def providers_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_provider_payload(payload)
    if errors:
        raise validation_failed(errors)
    _ensure_unique(s, AIProvider, "provider_id", payload["provider_id"].strip())
    provider = service.save_provider(s, None, payload, current_user())
    s.commit()
    return ok(provider.to_dict(), 201)


@bp.get("/providers/health")
@require_permission("ai.view")
def providers_health():
    hours = parse_int(request.args.get("hours"), 24)
    if hours is None or hours <= 0:
        hours = 24
    hours = min(hours, 24 * 90)
    return ok(service.provider_health(db_session(), hours), hours=hours)


@bp.get("/providers/<int:provider_pk>")
@require_permission("ai.view")
def providers_get(provider_pk: int):
    return ok(get_or_404(db_session(), AIProvider, provider_pk, "AI provider").to_dict())


@bp.put("/providers/<int:provider_pk>")
@require_permission("ai.edit")
def providers_update(provider_pk: int):
    s = db_session()
    provider = get_or_404(s, AIProvider, provider_pk, "AI provider")
    payload = normalize_keys(json_body())
    errors = service.validate_provider_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    if "provider_id" in payload:
        _ensure_unique(s, AIProvider, "provider_id", payload["provider_id"].strip(), exclude_id=provider.id)
    service.save_provider(s, provider, payload, current_user())
    s.commit()
    return ok(provider.to_dict())


@bp.delete("/providers/<int:provider_pk>")
@require_permission("ai.edit")
def providers_delete(provider_pk: int):
    s = db_session()
    provider = get_or_404(s, AIProvider, provider_pk, "AI provider")
    record_event(
        s,
        actor=current_user(),
        action="ai_provider.delete",
        entity_type="AIProvider",
        entity_id=provider.provider_id,
    )
    s.delete(provider)
    s.commit()
    return ok(None, message="AI provider deleted.")


# ---------- Models ----------
@bp.get("/models")
@require_permission("ai.view")
def models_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(AIModel)
    provider_id = clean_str(request.args.get("provider_id"))
    if provider_id:
        q = q.filter(AIModel.provider_id == provider_id)
    active = parse_bool(request.args.get("is_active"))
    if active is not None:
        q = q.filter(AIModel.is_active.is_(active))
    total = q.count()
    rows = q.order_by(AIModel.model_id.asc()).offset(offset).limit(limit).all()
    return ok([m.to_dict() for m in rows], total=total)


@bp.post("/models")
@require_permission("ai.edit")
def models_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_model_payload(payload)
    if errors:
        raise validation_failed(errors)
    _ensure_unique(s, AIModel, "model_id", payload["model_id"].strip())
    model = service.save_model(s, None, payload, current_user())
    s.commit()
    return ok(model.to_dict(), 201)


@bp.get("/models/<int:model_pk>")
@require_permission("ai.view")
def models_get(model_pk: int):
    return ok(get_or_404(db_session(), AIModel, model_pk, "AI model").to_dict())


@bp.put("/models/<int:model_pk>")
@require_permission("ai.edit")
def models_update(model_pk: int):
    s = db_session()
    model = get_or_404(s, AIModel, model_pk, "AI model")
    payload = normalize_keys(json_body())
    errors = service.validate_model_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    if "model_id" in payload:
        _ensure_unique(s, AIModel, "model_id", payload["model_id"].strip(), exclude_id=model.id)
    service.save_model(s, model, payload, current_user())
    s.commit()
    return ok(model.to_dict())


@bp.delete("/models/<int:model_pk>")
@require_permission("ai.edit")
def models_delete(model_pk: int):
    s = db_session()
    model = get_or_404(s, AIModel, model_pk, "AI model")
    record_event(s, actor=current_user(), action="ai_model.delete", entity_type="AIModel", entity_id=model.model_id)
    s.delete(model)
    s.commit()
    return ok(None, message="AI model deleted.")


# ---------- Usage ----------
@bp.post("/usage")
@require_permission("ai.record")
def usage_record():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_usage_payload(payload)
    if errors:
        raise validation_failed(errors)
    usage = service.record_usage(s, payload, current_user())
    s.commit()
    return ok(usage.to_dict(), 201, cost=usage.total_cost)


@bp.get("/usage/stats")
@require_permission("ai.view")
def usage_stats():
    return ok(service.usage_stats(db_session(), _query_filters()))


# ---------- IO logs ----------
@bp.get("/io-logs")
@require_permission("ai.view")
def io_logs_list():
    s = db_session()
    limit, offset = paging()
    q = service.filter_io_logs(s.query(AIIoLog), _query_filters())
    total = q.count()
    rows = q.order_by(AIIoLog.created_at.desc(), AIIoLog.id.desc()).offset(offset).limit(limit).all()
    return ok([r.to_dict() for r in rows], total=total)


@bp.post("/io-logs")
@require_permission("ai.record")
def io_logs_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_io_log_payload(payload)
    if errors:
        raise validation_failed(errors)
    log = service.record_io_log(s, payload, current_user())
    s.commit()
    return ok(log.to_dict(), 201)


@bp.get("/io-logs/stats")
@require_permission("ai.view")
def io_logs_stats():
    return ok(service.io_log_stats(db_session(), _query_filters()))
