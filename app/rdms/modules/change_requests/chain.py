"""
Request-chain resolver.

A rejected request may be resubmitted; the new request points back at it via
previous_request_id. Walking that backlink from any request yields every
review round of one logical change.
"""
from __future__ import annotations

import logging
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from app.rdms.errors import NotFoundError

from .models import ChangeRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_HOPS = 50


def _max_hops() -> int:
    if has_app_context():
        return int(current_app.config.get("REQUEST_CHAIN_MAX_HOPS") or DEFAULT_MAX_HOPS)
    return DEFAULT_MAX_HOPS


def get_request_chain(s: Session, request_id: int, *, max_hops: int | None = None) -> list[ChangeRequest]:
    """
    Follow previous_request_id from request_id until it ends.

    Returned newest -> oldest. Nothing in the schema prevents a cycle, so the
    walk stops on a revisited id or after max_hops links.
    """
    start = s.get(ChangeRequest, request_id)
    if not start:
        raise NotFoundError("Change request not found")

    limit = max_hops if max_hops is not None else _max_hops()
    chain = [start]
    seen = {start.id}
    current = start
    while current.previous_request_id is not None:
        if len(chain) > limit:
            logger.warning("Request chain from %s exceeded %s hops; truncating", request_id, limit)
            break
        prev_id = current.previous_request_id
        if prev_id in seen:
            logger.warning("Request chain cycle detected: %s -> %s (start=%s)", current.id, prev_id, request_id)
            break
        prev = s.get(ChangeRequest, prev_id)
        if prev is None:
            # Cancelled request; backlink left dangling.
            break
        chain.append(prev)
        seen.add(prev.id)
        current = prev
    return chain


def chain_entry(cr: ChangeRequest) -> dict[str, Any]:
    return {
        "id": cr.id,
        "type": cr.type,
        "status": cr.status,
        "previous_request_id": cr.previous_request_id,
        "submitted_by_id": cr.submitted_by_id,
        "submitter": cr.submitter_display,
        "submit_reason": cr.submit_reason,
        "reviewed_by_id": cr.reviewed_by_id,
        "reviewer": cr.reviewer_display,
        "review_note": cr.review_note,
        "created_at": cr.created_at.isoformat() if cr.created_at else None,
        "reviewed_at": cr.reviewed_at.isoformat() if cr.reviewed_at else None,
    }


def build_review_timeline(chain: list[ChangeRequest]) -> list[list[dict[str, Any]]]:
    """
    Group a chain into review rounds, oldest round first.

    Each round opens with SUBMISSION (or RESUBMISSION when it links back) and
    closes with APPROVAL or REJECTION once a reviewer has acted.
    """
    rounds: list[list[dict[str, Any]]] = []
    for cr in sorted(chain, key=lambda c: (c.created_at, c.id)):
        events = [
            {
                "type": "RESUBMISSION" if cr.previous_request_id else "SUBMISSION",
                "user": cr.submitter_display or "submitter",
                "date": cr.created_at,
                "note": cr.submit_reason,
                "status": "info",
            }
        ]
        reviewed_on = cr.reviewed_at or cr.updated_at
        if cr.status == "APPROVED" and cr.reviewer_display:
            events.append(
                {"type": "APPROVAL", "user": cr.reviewer_display, "date": reviewed_on, "note": cr.review_note, "status": "success"}
            )
        elif cr.status in ("REJECTED", "RESUBMITTED") and cr.reviewer_display:
            events.append(
                {"type": "REJECTION", "user": cr.reviewer_display, "date": reviewed_on, "note": cr.review_note, "status": "danger"}
            )
        rounds.append(events)
    return rounds
