from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.botconsole.audit import record_event
from app.botconsole.constants import QA_RECEIVER_TYPES
from app.botconsole.utils import clean_str, parse_bool, parse_int, split_csv, text_errors

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.botconsole.models import User
    from app.botconsole.modules.qa.models import QAEntry


MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


@dataclass(frozen=True)
class QAMatch:
    entry: "QAEntry"
    match_type: str  # exact | fuzzy
    matched_keyword: str

    def to_dict(self) -> dict:
        return {
            "matched": True,
            "qa_id": self.entry.id,
            "reply": self.entry.reply,
            "type": self.match_type,
            "keyword": self.matched_keyword,
        }


def _candidates(s: "Session", *, exact: bool, group_name: str | None, receiver_type: str | None):
    from app.botconsole.modules.qa.models import QAEntry

    q = s.query(QAEntry).filter(QAEntry.is_active.is_(True), QAEntry.is_exact_match.is_(exact))
    if receiver_type:
        q = q.filter(QAEntry.receiver_type.in_(("all", receiver_type)))
    else:
        q = q.filter(QAEntry.receiver_type == "all")
    group_filter = [QAEntry.group_name.is_(None), QAEntry.group_name == ""]
    if group_name:
        group_filter.append(QAEntry.group_name == group_name)
    q = q.filter(or_(*group_filter))
    return q.order_by(QAEntry.priority.asc(), QAEntry.created_at.asc(), QAEntry.id.asc())


def match_message(
    s: "Session",
    message: str,
    *,
    group_name: str | None = None,
    receiver_type: str | None = None,
) -> QAMatch | None:
    """
    Find the reply for a message: exact entries first (keyword == trimmed message),
    then fuzzy entries in priority order (message contains keyword or a related keyword).
    """
    text = (message or "").strip()
    if not text:
        return None

    for entry in _candidates(s, exact=True, group_name=group_name, receiver_type=receiver_type):
        if entry.keyword.strip() == text:
            return QAMatch(entry, "exact", entry.keyword)

    lowered = text.lower()
    for entry in _candidates(s, exact=False, group_name=group_name, receiver_type=receiver_type):
        for keyword in [entry.keyword] + split_csv(entry.related_keywords):
            kw = keyword.strip().lower()
            if kw and kw in lowered:
                return QAMatch(entry, "fuzzy", keyword.strip())
    return None


def validate_qa_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = text_errors(payload, "keyword", "reply", "receiver_type", "group_name")
    if (not partial or "keyword" in payload) and not clean_str(payload.get("keyword")):
        errors.append("keyword is required.")
    if (not partial or "reply" in payload) and not clean_str(payload.get("reply")):
        errors.append("reply is required.")
    receiver_type = payload.get("receiver_type")
    if receiver_type not in (None, "") and receiver_type not in QA_RECEIVER_TYPES:
        errors.append(f"Invalid receiver_type. Must be one of: {', '.join(QA_RECEIVER_TYPES)}")
    priority = payload.get("priority")
    if priority not in (None, ""):
        p = parse_int(priority)
        if p is None or not (MIN_PRIORITY <= p <= MAX_PRIORITY):
            errors.append(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}.")
    related = payload.get("related_keywords")
    if related is not None and not isinstance(related, (str, list)):
        errors.append("related_keywords must be a string or a list.")
    for flag in ("is_exact_match", "is_active"):
        if payload.get(flag) not in (None, "") and parse_bool(payload.get(flag)) is None:
            errors.append(f"{flag} must be a boolean.")
    return errors


def _related(value: Any) -> str | None:
    if isinstance(value, list):
        value = ",".join(str(v).strip() for v in value if str(v).strip())
    return ",".join(split_csv(value)) or None


def _build_entry(payload: dict) -> "QAEntry":
    from app.botconsole.modules.qa.models import QAEntry

    now = datetime.utcnow()
    return QAEntry(
        keyword=payload["keyword"].strip(),
        reply=payload["reply"].strip(),
        receiver_type=payload.get("receiver_type") or "all",
        priority=parse_int(payload.get("priority"), DEFAULT_PRIORITY),
        is_exact_match=bool(parse_bool(payload.get("is_exact_match"), False)),
        related_keywords=_related(payload.get("related_keywords")),
        group_name=clean_str(payload.get("group_name")),
        is_active=bool(parse_bool(payload.get("is_active"), True)),
        created_at=now,
        updated_at=now,
    )


def create_entry(s: "Session", payload: dict, user: "User") -> "QAEntry":
    entry = _build_entry(payload)
    s.add(entry)
    s.flush()
    record_event(
        s,
        actor=user,
        action="qa.create",
        entity_type="QAEntry",
        entity_id=str(entry.id),
        metadata={"keyword": entry.keyword},
    )
    return entry


def update_entry(s: "Session", entry: "QAEntry", payload: dict, user: "User") -> "QAEntry":
    changes: dict[str, Any] = {}

    def _set(field: str, value: Any) -> None:
        if getattr(entry, field) != value:
            changes[field] = {"old": getattr(entry, field), "new": value}
            setattr(entry, field, value)

    if "keyword" in payload:
        _set("keyword", payload["keyword"].strip())
    if "reply" in payload:
        _set("reply", payload["reply"].strip())
    if "receiver_type" in payload:
        _set("receiver_type", payload.get("receiver_type") or "all")
    if "priority" in payload:
        _set("priority", parse_int(payload.get("priority"), DEFAULT_PRIORITY))
    if "is_exact_match" in payload:
        _set("is_exact_match", bool(parse_bool(payload.get("is_exact_match"), False)))
    if "related_keywords" in payload:
        _set("related_keywords", _related(payload.get("related_keywords")))
    if "group_name" in payload:
        _set("group_name", clean_str(payload.get("group_name")))
    if "is_active" in payload:
        _set("is_active", bool(parse_bool(payload.get("is_active"), True)))

    if changes:
        entry.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="qa.update",
            entity_type="QAEntry",
            entity_id=str(entry.id),
            metadata={"changes": changes},
        )
    return entry


def import_entries(s: "Session", rows: list[tuple[int, dict]], user: "User", *, source: str) -> dict:
    """
    Import rows one by one. Invalid rows are reported and skipped; valid rows are kept.
    Writes one summary audit event.
    """
    results: list[dict] = []
    created = 0
    for row_number, payload in rows:
        if not isinstance(payload, dict):
            results.append({"row": row_number, "success": False, "errors": ["Row must be an object."]})
            continue
        errors = validate_qa_payload(payload)
        if errors:
            results.append({"row": row_number, "success": False, "errors": errors})
            continue
        entry = _build_entry(payload)
        s.add(entry)
        s.flush()
        created += 1
        results.append({"row": row_number, "success": True, "id": entry.id, "keyword": entry.keyword})

    failed = len(results) - created
    record_event(
        s,
        actor=user,
        action="qa.import",
        entity_type="QAEntry",
        metadata={"source": source, "rows": len(results), "created": created, "failed": failed},
    )
    return {"total": len(results), "created": created, "failed": failed, "results": results}
