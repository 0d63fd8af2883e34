from __future__ import annotations

from flask import Blueprint, request

from app.botconsole.api import ApiError, get_or_404, json_body, ok, paging, validation_failed
from app.botconsole.audit import record_event
from app.botconsole.db import db_session
from app.botconsole.modules.qa import service
from app.botconsole.modules.qa.models import QAEntry
from app.botconsole.modules.qa.parsers.csv import parse_qa_csv
from app.botconsole.rbac import current_user, require_permission
from app.botconsole.utils import clean_str, normalize_keys, parse_bool

bp = Blueprint("qa", __name__)


@bp.get("")
@require_permission("qa.view")
def qa_list():
    s = db_session()
    limit, offset = paging()
    q = s.query(QAEntry)
    group_name = clean_str(request.args.get("group_name"))
    if group_name:
        q = q.filter(QAEntry.group_name == group_name)
    is_active = parse_bool(request.args.get("is_active"))
    if is_active is not None:
        q = q.filter(QAEntry.is_active.is_(is_active))
    receiver_type = clean_str(request.args.get("receiver_type"))
    if receiver_type:
        q = q.filter(QAEntry.receiver_type == receiver_type)
    search = clean_str(request.args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(
            (QAEntry.keyword.ilike(like)) | (QAEntry.reply.ilike(like)) | (QAEntry.related_keywords.ilike(like))
        )
    total = q.count()
    entries = (
        q.order_by(QAEntry.priority.asc(), QAEntry.created_at.asc(), QAEntry.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return ok([e.to_dict() for e in entries], total=total)


@bp.post("")
@require_permission("qa.edit")
def qa_create():
    s = db_session()
    payload = normalize_keys(json_body())
    errors = service.validate_qa_payload(payload)
    if errors:
        raise validation_failed(errors)
    entry = service.create_entry(s, payload, current_user())
    s.commit()
    return ok(entry.to_dict(), 201)


@bp.post("/match")
@require_permission("qa.view")
def qa_match():
    s = db_session()
    payload = normalize_keys(json_body())
    message = payload.get("message")
    if not clean_str(message):
        raise ApiError("Missing required fields: message")
    match = service.match_message(
        s,
        str(message),
        group_name=clean_str(payload.get("group_name")),
        receiver_type=clean_str(payload.get("receiver_type")),
    )
    return ok(match.to_dict() if match else {"matched": False})


@bp.post("/import")
@require_permission("qa.edit")
def qa_import():
    s = db_session()
    upload = request.files.get("file")
    if upload is not None:
        if not (upload.filename or "").lower().endswith(".csv"):
            raise ApiError("Only .csv uploads are supported.")
        rows = parse_qa_csv(upload.read())
        source = "csv"
    else:
        body = request.get_json(silent=True)
        entries = body.get("entries") if isinstance(body, dict) else body
        if not isinstance(entries, list) or not entries:
            raise ApiError("Provide a CSV file or a non-empty JSON list of entries.")
        rows = [(i, normalize_keys(e) if isinstance(e, dict) else e) for i, e in enumerate(entries, start=1)]
        source = "json"

    result = service.import_entries(s, rows, current_user(), source=source)
    s.commit()
    return ok(result, message=f"Imported {result['created']} of {result['total']} row(s).")


@bp.get("/<int:qa_id>")
@require_permission("qa.view")
def qa_get(qa_id: int):
    s = db_session()
    entry = get_or_404(s, QAEntry, qa_id, "QA entry")
    return ok(entry.to_dict())


@bp.put("/<int:qa_id>")
@require_permission("qa.edit")
def qa_update(qa_id: int):
    s = db_session()
    entry = get_or_404(s, QAEntry, qa_id, "QA entry")
    payload = normalize_keys(json_body())
    errors = service.validate_qa_payload(payload, partial=True)
    if errors:
        raise validation_failed(errors)
    service.update_entry(s, entry, payload, current_user())
    s.commit()
    return ok(entry.to_dict())


@bp.delete("/<int:qa_id>")
@require_permission("qa.edit")
def qa_delete(qa_id: int):
    s = db_session()
    entry = get_or_404(s, QAEntry, qa_id, "QA entry")
    record_event(
        s,
        actor=current_user(),
        action="qa.delete",
        entity_type="QAEntry",
        entity_id=str(entry.id),
        metadata={"keyword": entry.keyword},
    )
    s.delete(entry)
    s.commit()
    return ok(None, message="QA entry deleted.")
