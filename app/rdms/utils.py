from __future__ import annotations

from datetime import date, datetime
from typing import Any

from flask import current_app, has_app_context, jsonify, request

from app.rdms.constants import DEFAULT_REVIEW_NOTE
from app.rdms.errors import ValidationError


def iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def default_review_note() -> str:
    if has_app_context():
        return current_app.config.get("DEFAULT_REVIEW_NOTE") or DEFAULT_REVIEW_NOTE
    return DEFAULT_REVIEW_NOTE


def clean_text(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


# --- HTTP helpers ---


def json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def ok(payload: Any = None, status: int = 200, **extra: Any):
    body: dict[str, Any] = {"ok": True}
    if payload is not None:
        body["data"] = payload
    body.update(extra)
    return jsonify(body), status


def optional_int(value: Any, name: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer.")


def parse_date(raw: str | None, *, end_of_day: bool = False) -> datetime | None:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        d = date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid date: {raw}")
    if end_of_day:
        return datetime(d.year, d.month, d.day, 23, 59, 59, 999999)
    return datetime(d.year, d.month, d.day)
