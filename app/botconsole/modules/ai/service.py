from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func

from app.botconsole.audit import record_event
from app.botconsole.utils import clean_str, parse_bool, parse_datetime, parse_float, parse_int, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session
    from app.botconsole.models import User
    from app.botconsole.modules.ai.models import AIIoLog, AIModel, AIModelUsage, AIProvider

_IDENT_RE = re.compile(r"^[A-Za-z0-9_.:/-]{1,128}$")
USAGE_STATUSES = ("success", "error")

DOWN_SUCCESS_RATE = 50.0
DEGRADED_SUCCESS_RATE = 90.0
DEGRADED_LATENCY_MS = 10000.0


def _check_ident(payload: dict, field: str, partial: bool, errors: list[str]) -> None:
    if partial and field not in payload:
        return
    value = (payload.get(field) or "").strip() if isinstance(payload.get(field), str) else ""
    if not _IDENT_RE.match(value):
        errors.append(f"{field} is required (letters, digits, '_', '-', '.', ':', '/').")


def _check_number(payload: dict, field: str, errors: list[str], *, minimum: float = 0) -> None:
    if payload.get(field) in (None, ""):
        return
    value = parse_float(payload.get(field))
    if value is None or value < minimum:
        errors.append(f"{field} must be a number >= {minimum:g}.")


# ---------- Providers ----------
def validate_provider_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "provider_name")
    _check_ident(payload, "provider_id", partial, errors)
    if (not partial or "provider_name" in payload) and not clean_str(payload.get("provider_name")):
        errors.append("provider_name is required.")
    _check_number(payload, "rate_limit", errors)
    return errors


def save_provider(s: "Session", provider: "AIProvider | None", payload: dict, user: "User") -> "AIProvider":
    from app.botconsole.modules.ai.models import AIProvider

    now = datetime.utcnow()
    creating = provider is None
    if creating:
        provider = AIProvider(is_active=True, created_at=now)
        s.add(provider)
    if "provider_id" in payload:
        provider.provider_id = payload["provider_id"].strip()
    if "provider_name" in payload:
        provider.provider_name = payload["provider_name"].strip()
    for field in ("provider_type", "api_endpoint"):
        if field in payload:
            setattr(provider, field, clean_str(payload.get(field)))
    if "api_key" in payload:
        provider.api_key = clean_str(payload.get("api_key"))
    if "rate_limit" in payload:
        provider.rate_limit = parse_int(payload.get("rate_limit"))
    if "is_active" in payload:
        provider.is_active = bool(parse_bool(payload.get("is_active"), True))
    provider.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="ai_provider.create" if creating else "ai_provider.update",
        entity_type="AIProvider",
        entity_id=provider.provider_id,
        metadata={"api_key_changed": "api_key" in payload},
    )
    return provider


# ---------- Models ----------
def validate_model_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "model_name")
    _check_ident(payload, "model_id", partial, errors)
    if (not partial or "model_name" in payload) and not clean_str(payload.get("model_name")):
        errors.append("model_name is required.")
    for field in ("input_price", "output_price", "temperature"):
        _check_number(payload, field, errors)
    _check_number(payload, "max_tokens", errors, minimum=1)
    config = payload.get("model_config")
    if config is not None and not isinstance(config, dict):
        errors.append("model_config must be an object.")
    return errors


def save_model(s: "Session", model: "AIModel | None", payload: dict, user: "User") -> "AIModel":
    from app.botconsole.modules.ai.models import AIModel

    now = datetime.utcnow()
    creating = model is None
    if creating:
        model = AIModel(is_active=True, input_price=0.0, output_price=0.0, created_at=now)
        s.add(model)
    if "model_id" in payload:
        model.model_id = payload["model_id"].strip()
    if "model_name" in payload:
        model.model_name = payload["model_name"].strip()
    for field in ("model_type", "provider_id", "api_endpoint", "api_key"):
        if field in payload:
            setattr(model, field, clean_str(payload.get(field)))
    if "model_config" in payload:
        model.model_config = payload.get("model_config")
    if "max_tokens" in payload:
        model.max_tokens = parse_int(payload.get("max_tokens"))
    if "temperature" in payload:
        model.temperature = parse_float(payload.get("temperature"))
    for field in ("input_price", "output_price"):
        if field in payload:
            setattr(model, field, parse_float(payload.get(field), 0.0))
    if "is_active" in payload:
        model.is_active = bool(parse_bool(payload.get("is_active"), True))
    model.updated_at = now
    s.flush()
    record_event(
        s,
        actor=user,
        action="ai_model.create" if creating else "ai_model.update",
        entity_type="AIModel",
        entity_id=model.model_id,
        metadata={"provider_id": model.provider_id, "api_key_changed": "api_key" in payload},
    )
    return model


# ---------- Usage ----------
def compute_cost(tokens: int, price_per_1k: float | None) -> float:
    return round((tokens or 0) / 1000.0 * (price_per_1k or 0.0), 6)


def validate_usage_payload(payload: dict) -> list[str]:
    errors = text_errors(payload, "model_id", "provider_id")
    if not clean_str(payload.get("model_id")):
        errors.append("model_id is required.")
    for field in ("input_tokens", "output_tokens", "total_tokens", "response_time"):
        if payload.get(field) not in (None, ""):
            value = parse_int(payload.get(field))
            if value is None or value < 0:
                errors.append(f"{field} must be a non-negative integer.")
    if payload.get("status") not in (None, "") and payload.get("status") not in USAGE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(USAGE_STATUSES)}")
    if payload.get("metadata") is not None and not isinstance(payload.get("metadata"), dict):
        errors.append("metadata must be an object.")
    return errors


def record_usage(s: "Session", payload: dict, user: "User") -> "AIModelUsage":
    """Store one model call; cost comes from the model's per-1K prices (0 for unknown models)."""
    from app.botconsole.modules.ai.models import AIModel, AIModelUsage

    model_id = payload["model_id"].strip()
    model = s.query(AIModel).filter(AIModel.model_id == model_id).one_or_none()
    input_tokens = parse_int(payload.get("input_tokens"), 0)
    output_tokens = parse_int(payload.get("output_tokens"), 0)
    total_tokens = parse_int(payload.get("total_tokens"))
    if total_tokens is None:
        total_tokens = input_tokens + output_tokens

    input_cost = compute_cost(input_tokens, model.input_price if model else 0.0)
    output_cost = compute_cost(output_tokens, model.output_price if model else 0.0)
    usage = AIModelUsage(
        model_id=model_id,
        provider_id=clean_str(payload.get("provider_id")) or (model.provider_id if model else None),
        session_id=clean_str(payload.get("session_id")),
        operation_type=clean_str(payload.get("operation_type")),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=round(input_cost + output_cost, 6),
        response_time=parse_int(payload.get("response_time")),
        status=payload.get("status") or "success",
        error_message=clean_str(payload.get("error_message")),
        extra_data=payload.get("metadata"),
        created_at=datetime.utcnow(),
    )
    s.add(usage)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ai_usage.record",
        entity_type="AIModelUsage",
        entity_id=str(usage.id),
        metadata={"model_id": model_id, "known_model": model is not None, "total_cost": usage.total_cost},
    )
    return usage


def filter_usage(q: "Query", filters: dict[str, Any]) -> "Query":
    from app.botconsole.modules.ai.models import AIModelUsage

    start = parse_datetime(filters.get("start"))
    end = parse_datetime(filters.get("end"))
    if start:
        q = q.filter(AIModelUsage.created_at >= start)
    if end:
        q = q.filter(AIModelUsage.created_at <= end)
    for field in ("model_id", "provider_id", "operation_type"):
        value = clean_str(filters.get(field))
        if value:
            q = q.filter(getattr(AIModelUsage, field) == value)
    return q


def _usage_aggregates():
    from app.botconsole.modules.ai.models import AIModelUsage

    return (
        func.count(AIModelUsage.id),
        func.coalesce(func.sum(AIModelUsage.total_tokens), 0),
        func.coalesce(func.sum(AIModelUsage.total_cost), 0.0),
        func.coalesce(func.sum(case((AIModelUsage.status == "success", 1), else_=0)), 0),
        func.coalesce(func.sum(case((AIModelUsage.status == "error", 1), else_=0)), 0),
        func.avg(AIModelUsage.response_time),
    )


def _aggregate_row(row) -> dict:
    requests, tokens, cost, success, errors, avg_rt = row
    return {
        "requests": int(requests or 0),
        "tokens": int(tokens or 0),
        "cost": round(float(cost or 0.0), 6),
        "success": int(success or 0),
        "errors": int(errors or 0),
        "avg_response_time": round(float(avg_rt), 2) if avg_rt is not None else None,
    }


def usage_stats(s: "Session", filters: dict[str, Any]) -> dict:
    from app.botconsole.modules.ai.models import AIModelUsage

    base = filter_usage(s.query(AIModelUsage), filters)
    totals = _aggregate_row(base.with_entities(*_usage_aggregates()).one())

    by_model = [
        {"model_id": row[0], **_aggregate_row(row[1:])}
        for row in base.with_entities(AIModelUsage.model_id, *_usage_aggregates())
        .group_by(AIModelUsage.model_id)
        .order_by(AIModelUsage.model_id.asc())
        .all()
    ]
    day = func.date(AIModelUsage.created_at)
    by_day = [
        {"date": str(row[0]), **_aggregate_row(row[1:])}
        for row in base.with_entities(day, *_usage_aggregates()).group_by(day).order_by(day.asc()).all()
    ]
    return {"totals": totals, "by_model": by_model, "by_day": by_day}


def health_verdict(requests: int, success_rate: float | None, avg_latency_ms: float | None) -> str:
    if not requests:
        return "idle"
    rate = success_rate or 0.0
    if rate < DOWN_SUCCESS_RATE:
        return "down"
    if rate < DEGRADED_SUCCESS_RATE or (avg_latency_ms or 0.0) > DEGRADED_LATENCY_MS:
        return "degraded"
    return "healthy"


def provider_health(s: "Session", hours: int, now: datetime | None = None) -> list[dict]:
    from app.botconsole.modules.ai.models import AIModelUsage, AIProvider

    now = now or datetime.utcnow()
    since = now - timedelta(hours=hours)
    rows = (
        s.query(AIModelUsage.provider_id, *_usage_aggregates())
        .filter(AIModelUsage.created_at >= since)
        .group_by(AIModelUsage.provider_id)
        .all()
    )
    usage_by_provider = {row[0]: _aggregate_row(row[1:]) for row in rows}

    out: list[dict] = []
    for provider in s.query(AIProvider).order_by(AIProvider.provider_id.asc()).all():
        agg = usage_by_provider.get(provider.provider_id) or _aggregate_row((0, 0, 0.0, 0, 0, None))
        rate = round(agg["success"] * 100.0 / agg["requests"], 2) if agg["requests"] else None
        out.append(
            {
                "provider_id": provider.provider_id,
                "provider_name": provider.provider_name,
                "is_active": provider.is_active,
                "requests": agg["requests"],
                "success_rate": rate,
                "avg_latency": agg["avg_response_time"],
                "cost": agg["cost"],
                "status": health_verdict(agg["requests"], rate, agg["avg_response_time"]),
            }
        )
    return out


# ---------- IO logs ----------
def validate_io_log_payload(payload: dict) -> list[str]:
    errors = text_errors(payload, "operation_type")
    if not clean_str(payload.get("operation_type")):
        errors.append("operation_type is required.")
    if payload.get("status") not in (None, "") and payload.get("status") not in USAGE_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(USAGE_STATUSES)}")
    if payload.get("request_duration") not in (None, ""):
        value = parse_int(payload.get("request_duration"))
        if value is None or value < 0:
            errors.append("request_duration must be a non-negative integer.")
    if payload.get("extra_data") is not None and not isinstance(payload.get("extra_data"), dict):
        errors.append("extra_data must be an object.")
    return errors


def record_io_log(s: "Session", payload: dict, user: "User") -> "AIIoLog":
    from app.botconsole.modules.ai.models import AIIoLog

    log = AIIoLog(
        session_id=clean_str(payload.get("session_id")),
        message_id=clean_str(payload.get("message_id")),
        robot_id=clean_str(payload.get("robot_id")),
        robot_name=clean_str(payload.get("robot_name")),
        operation_type=payload["operation_type"].strip(),
        ai_input=payload.get("ai_input"),
        ai_output=payload.get("ai_output"),
        model_id=clean_str(payload.get("model_id")),
        temperature=parse_float(payload.get("temperature")),
        request_duration=parse_int(payload.get("request_duration")),
        status=payload.get("status") or "success",
        error_message=clean_str(payload.get("error_message")),
        extra_data=payload.get("extra_data"),
        created_at=datetime.utcnow(),
    )
    s.add(log)
    s.flush()
    record_event(
        s,
        actor=user,
        action="ai_io_log.record",
        entity_type="AIIoLog",
        entity_id=str(log.id),
        metadata={"operation_type": log.operation_type, "status": log.status},
    )
    return log


def filter_io_logs(q: "Query", filters: dict[str, Any]) -> "Query":
    from app.botconsole.modules.ai.models import AIIoLog

    for field in ("session_id", "message_id", "robot_id", "operation_type", "status"):
        value = clean_str(filters.get(field))
        if value:
            q = q.filter(getattr(AIIoLog, field) == value)
    start = parse_datetime(filters.get("start"))
    end = parse_datetime(filters.get("end"))
    if start:
        q = q.filter(AIIoLog.created_at >= start)
    if end:
        q = q.filter(AIIoLog.created_at <= end)
    return q


def io_log_stats(s: "Session", filters: dict[str, Any]) -> dict:
    from app.botconsole.modules.ai.models import AIIoLog

    total, success, errors, avg_duration = (
        filter_io_logs(s.query(AIIoLog), filters)
        .with_entities(
            func.count(AIIoLog.id),
            func.coalesce(func.sum(case((AIIoLog.status == "success", 1), else_=0)), 0),
            func.coalesce(func.sum(case((AIIoLog.status == "error", 1), else_=0)), 0),
            func.avg(AIIoLog.request_duration),
        )
        .one()
    )
    return {
        "total": int(total or 0),
        "success": int(success or 0),
        "error": int(errors or 0),
        "avg_duration": round(float(avg_duration), 2) if avg_duration is not None else None,
    }
