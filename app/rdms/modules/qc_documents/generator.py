"""
QC document generation.

The rendered document is a plain-text sign-off sheet written through the
configured Storage backend; the storage key becomes ItemHistory.iso_doc_path.
Generators may raise: callers treat any failure as non-fatal.
"""
from __future__ import annotations

import html
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flask import current_app, has_app_context

from app.rdms.storage import Storage, storage_from_config

CHANGE_TYPE_LABELS = {"CREATE": "Create", "UPDATE": "Update", "DELETE": "Delete", "RESTORE": "Restore"}
EVENT_LABELS = {
    "SUBMISSION": "Submitted",
    "RESUBMISSION": "Resubmitted",
    "APPROVAL": "Approved",
    "REJECTION": "Returned for changes",
}

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Signatures:
    qc_user: str | None = None
    qc_date: datetime | None = None
    qc_note: str | None = None
    pm_user: str | None = None
    pm_date: datetime | None = None
    pm_note: str | None = None
    revisions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class DocumentContext:
    history_id: int
    version: int
    change_type: str
    item_full_id: str
    item_title: str
    project_id: int | None
    project_label: str
    snapshot: dict[str, Any]
    diff: dict[str, Any] | None
    timeline: list[list[dict[str, Any]]]
    signatures: Signatures


def strip_html(value: str | None) -> str:
    if not value:
        return "(no content)"
    text = html.unescape(_TAG_RE.sub(" ", value))
    return _WS_RE.sub(" ", text).strip() or "(no content)"


def _fmt(dt: datetime | None) -> str:
    return dt.strftime("%Y/%m/%d %H:%M") if dt else "-"


def _fmt_value(value: Any) -> str:
    if isinstance(value, str):
        return strip_html(value)
    if value is None:
        return "(none)"
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def render_document(ctx: DocumentContext) -> str:
    lines = [
        f"QC DOCUMENT  v{ctx.version}",
        f"{ctx.item_full_id} - {ctx.item_title}",
        f"Project: {ctx.project_label}",
        f"Change type: {CHANGE_TYPE_LABELS.get(ctx.change_type, ctx.change_type)}",
        "",
        "== Review timeline ==",
    ]
    for n, round_events in enumerate(ctx.timeline, start=1):
        lines.append(f"Round {n}")
        for ev in round_events:
            note = f"  ({ev['note']})" if ev.get("note") else ""
            lines.append(f"  {_fmt(ev.get('date'))}  {EVENT_LABELS.get(ev['type'], ev['type'])} by {ev['user']}{note}")

    lines += ["", "== Changes =="]
    if ctx.diff:
        for key, pair in ctx.diff.items():
            lines.append(f"[{key}]")
            lines.append(f"  old: {_fmt_value(pair.get('old'))}")
            lines.append(f"  new: {_fmt_value(pair.get('new'))}")
    else:
        for key in ("title", "content", "attachments", "related_items"):
            lines.append(f"{key}: {_fmt_value(ctx.snapshot.get(key))}")

    sig = ctx.signatures
    lines += [
        "",
        "== Sign-off ==",
        f"QC: {sig.qc_user or '-'}  {_fmt(sig.qc_date)}  {sig.qc_note or ''}".rstrip(),
        f"PM: {sig.pm_user or '-'}  {_fmt(sig.pm_date)}  {sig.pm_note or ''}".rstrip(),
    ]
    if sig.revisions:
        lines += ["", "== Revision requests =="]
        for rev in sig.revisions:
            resolved = f" resolved {_fmt(rev.get('resolved_at'))}" if rev.get("resolved_at") else ""
            lines.append(
                f"#{rev['revision_number']} {_fmt(rev.get('requested_at'))} by {rev.get('requested_by') or '-'}: "
                f"{rev.get('request_note') or ''}{resolved}"
            )
    return "\n".join(lines) + "\n"


class DocumentGenerator:
    def generate(self, ctx: DocumentContext) -> str:
        """Render and persist the document; return its path/key."""
        raise NotImplementedError


@dataclass(frozen=True)
class StoredDocumentGenerator(DocumentGenerator):
    storage: Storage
    prefix: str = "iso-docs"

    def generate(self, ctx: DocumentContext) -> str:
        safe_full_id = re.sub(r"[^A-Za-z0-9_.-]", "_", ctx.item_full_id)
        key = f"{self.prefix}/{ctx.project_id or 'none'}/{safe_full_id}/v{ctx.version}-h{ctx.history_id}.txt"
        self.storage.put_bytes(key, render_document(ctx).encode("utf-8"), content_type="text/plain; charset=utf-8")
        return key


def generator_from_config(config: dict) -> DocumentGenerator:
    return StoredDocumentGenerator(
        storage=storage_from_config(config),
        prefix=(config.get("ISO_DOCS_PREFIX") or "iso-docs").strip("/"),
    )


def get_document_generator() -> DocumentGenerator:
    """App-registered generator if any, else one built from config."""
    if has_app_context():
        registered = current_app.extensions.get("qc_document_generator")
        if registered is not None:
            return registered
        return generator_from_config(current_app.config)
    return generator_from_config({})
