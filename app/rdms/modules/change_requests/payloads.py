"""
Typed payloads for ChangeRequest.data, one variant per request type.

The JSON blob is parsed at the service boundary; everything past
parse_payload() works with these dataclasses only.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Union

from app.rdms.constants import TITLE_MAX_LENGTH
from app.rdms.errors import ValidationError

RELATION_DESCRIPTION_MAX_LENGTH = 512


@dataclass(frozen=True)
class RelatedItemRef:
    id: int
    description: str | None = None


@dataclass(frozen=True)
class CreateItemPayload:
    title: str
    content: str | None = None
    attachments: list = field(default_factory=list)
    related_items: list[RelatedItemRef] = field(default_factory=list)


@dataclass(frozen=True)
class UpdateItemPayload:
    title: str
    content: str | None = None
    attachments: list | None = None
    # None leaves relations untouched; a list (even empty) replaces them.
    related_items: list[RelatedItemRef] | None = None


@dataclass(frozen=True)
class DeleteItemPayload:
    pass


@dataclass(frozen=True)
class ProjectUpdatePayload:
    title: str
    description: str | None = None


@dataclass(frozen=True)
class ProjectDeletePayload:
    # Display only; the project row is gone once approved.
    title: str | None = None
    code_prefix: str | None = None


Payload = Union[CreateItemPayload, UpdateItemPayload, DeleteItemPayload, ProjectUpdatePayload, ProjectDeletePayload]


def _parse_related(raw: Any) -> list[RelatedItemRef]:
    if not isinstance(raw, list):
        raise ValidationError("related_items must be a list.")
    out: list[RelatedItemRef] = []
    for entry in raw:
        if isinstance(entry, bool):
            raise ValidationError("Malformed related item reference.")
        if isinstance(entry, int):
            out.append(RelatedItemRef(id=entry))
            continue
        if isinstance(entry, dict) and isinstance(entry.get("id"), int) and not isinstance(entry.get("id"), bool):
            desc = _optional_text(entry.get("description"), "Related item description")
            if desc and len(desc) > RELATION_DESCRIPTION_MAX_LENGTH:
                raise ValidationError(f"Related item description must be at most {RELATION_DESCRIPTION_MAX_LENGTH} characters.")
            out.append(RelatedItemRef(id=entry["id"], description=desc or None))
            continue
        raise ValidationError("Malformed related item reference.")
    return out


def _require_title(fields: dict[str, Any]) -> str:
    title = fields.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Missing required fields: title.")
    title = title.strip()
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    return title


def _optional_text(value: Any, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string.")
    return value


def _optional_list(value: Any, name: str) -> list | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{name} must be a list.")
    return value


def build_payload(request_type: str, fields: dict[str, Any] | None) -> Payload:
    """Validate loose input fields into the typed payload for request_type."""
    fields = fields or {}
    if request_type == "CREATE":
        return CreateItemPayload(
            title=_require_title(fields),
            content=_optional_text(fields.get("content"), "content"),
            attachments=_optional_list(fields.get("attachments"), "attachments") or [],
            related_items=_parse_related(fields.get("related_items") or []),
        )
    if request_type == "UPDATE":
        related = fields.get("related_items")
        return UpdateItemPayload(
            title=_require_title(fields),
            content=_optional_text(fields.get("content"), "content"),
            attachments=_optional_list(fields.get("attachments"), "attachments"),
            related_items=_parse_related(related) if related is not None else None,
        )
    if request_type == "DELETE":
        return DeleteItemPayload()
    if request_type == "PROJECT_UPDATE":
        desc = _optional_text(fields.get("description"), "description")
        return ProjectUpdatePayload(title=_require_title(fields), description=desc or None)
    if request_type == "PROJECT_DELETE":
        return ProjectDeletePayload(title=fields.get("title"), code_prefix=fields.get("code_prefix"))
    raise ValidationError(f"Unknown request type: {request_type}")


def dump_payload(payload: Payload) -> str:
    return json.dumps(asdict(payload), sort_keys=True)


def parse_payload(request_type: str, raw: str | None) -> Payload:
    """Decode a stored ChangeRequest.data blob."""
    try:
        fields = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        raise ValidationError(f"Stored request payload is not valid JSON: {e}") from e
    if not isinstance(fields, dict):
        raise ValidationError("Stored request payload must be a JSON object.")
    return build_payload(request_type, fields)


def payload_to_dict(payload: Payload) -> dict[str, Any]:
    return asdict(payload)
