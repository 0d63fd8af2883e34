from __future__ import annotations

import csv
import io

QA_CSV_COLUMNS = (
    "keyword",
    "reply",
    "receiver_type",
    "priority",
    "is_exact_match",
    "related_keywords",
    "group_name",
)


def _get(row: dict[str, str], *names: str) -> str:
    for n in names:
        if n in row and row[n] is not None:
            return str(row[n]).strip()
    return ""


def parse_qa_csv(file_bytes: bytes) -> list[tuple[int, dict]]:
    """
    Parse a QA knowledge-base CSV.

    Expected headers: keyword, reply. Optional: receiver_type, priority, is_exact_match,
    related_keywords, group_name (camelCase variants accepted).

    Returns (row_number, raw_row) pairs; row 1 is the header. Validation happens per row
    in the service so one bad row never blocks the rest.
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")
    headers = {h.strip() for h in reader.fieldnames if h}
    if not ({"keyword", "Keyword"} & headers) or not ({"reply", "Reply"} & headers):
        raise ValueError("CSV must have 'keyword' and 'reply' columns.")

    rows: list[tuple[int, dict]] = []
    for idx, raw in enumerate(reader, start=2):  # 1 = header
        # Skip fully empty rows
        if not raw or all((v or "").strip() == "" for v in raw.values() if isinstance(v, str)):
            continue
        raw = {(k or "").strip(): v for k, v in raw.items()}
        rows.append(
            (
                idx,
                {
                    "keyword": _get(raw, "keyword", "Keyword"),
                    "reply": _get(raw, "reply", "Reply"),
                    "receiver_type": _get(raw, "receiver_type", "receiverType") or None,
                    "priority": _get(raw, "priority", "Priority") or None,
                    "is_exact_match": _get(raw, "is_exact_match", "isExactMatch") or None,
                    "related_keywords": _get(raw, "related_keywords", "relatedKeywords") or None,
                    "group_name": _get(raw, "group_name", "groupName") or None,
                },
            )
        )
    return rows
