"""
JSON envelope helpers shared by every blueprint.

Success: {"success": true, "data": ..., <extra keys>}
Failure: {"success": false, "error": "...", <extra keys>}
"""
from __future__ import annotations

from typing import Any, TypeVar

from flask import jsonify, request
from sqlalchemy.orm import Session

T = TypeVar("T")

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


class ApiError(Exception):
    def __init__(self, message: str, status: int = 400, errors: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.errors = errors


def ok(data: Any = None, status: int = 200, **extra: Any):
    body: dict[str, Any] = {"success": True, "data": data}
    body.update(extra)
    return jsonify(body), status


def fail(message: str, status: int = 400, **extra: Any):
    body: dict[str, Any] = {"success": False, "error": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return jsonify(body), status


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ApiError("Request body must be a JSON object.")
    return payload


def require_fields(payload: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if payload.get(n) in (None, "", [])]
    if missing:
        raise ApiError(f"Missing required fields: {', '.join(missing)}")


def get_or_404(s: Session, model: type[T], ident: Any, label: str | None = None) -> T:
    obj = s.get(model, ident)
    if obj is None:
        raise ApiError(f"{label or model.__name__} not found", 404)
    return obj


def paging() -> tuple[int, int]:
    """Read limit/offset from the query string, clamped to sane bounds."""
    try:
        limit = int(request.args.get("limit") or DEFAULT_LIMIT)
    except ValueError:
        limit = DEFAULT_LIMIT
    try:
        offset = int(request.args.get("offset") or 0)
    except ValueError:
        offset = 0
    return max(1, min(limit, MAX_LIMIT)), max(0, offset)


def validation_failed(errors: list[str]) -> ApiError:
    return ApiError(errors[0] if len(errors) == 1 else "Validation failed.", 400, errors=errors)
