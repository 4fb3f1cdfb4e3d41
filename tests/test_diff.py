"""
Unit tests for the pure helpers behind the history ledger.

Covers:
- snapshot diffing (scalar fields, related items, no-change -> None)
- natural fullId ordering
- payload validation
- review timeline grouping
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.rdms.errors import ValidationError
from app.rdms.modules.change_requests.chain import build_review_timeline
from app.rdms.modules.change_requests.payloads import (
    CreateItemPayload,
    RelatedItemRef,
    UpdateItemPayload,
    build_payload,
    dump_payload,
    parse_payload,
)
from app.rdms.modules.history.diff import compute_diff
from app.rdms.modules.items.service import natural_key


def _snap(**kw):
    base = {"title": "A", "content": "x", "attachments": None, "related_items": []}
    base.update(kw)
    return base


class TestComputeDiff:
    def test_only_changed_scalar_fields_are_reported(self):
        d = compute_diff(_snap(), _snap(content="y"))
        assert d == {"content": {"old": "x", "new": "y"}}

    def test_identical_snapshots_give_none(self):
        assert compute_diff(_snap(), _snap()) is None

    def test_related_items_order_does_not_matter(self):
        old = _snap(related_items=[{"id": 2, "full_id": "P-2"}, {"id": 1, "full_id": "P-1"}])
        new = _snap(related_items=[{"id": 1, "full_id": "P-1"}, {"id": 2, "full_id": "P-2"}])
        assert compute_diff(old, new) is None

    def test_related_items_change_keeps_original_lists(self):
        old_rel = [{"id": 2, "full_id": "P-2"}]
        new_rel = [{"id": 3, "full_id": "P-3"}, {"id": 2, "full_id": "P-2"}]
        d = compute_diff(_snap(related_items=old_rel), _snap(related_items=new_rel))
        assert d == {"related_items": {"old": old_rel, "new": new_rel}}

    def test_attachments_none_vs_list(self):
        d = compute_diff(_snap(), _snap(attachments='[{"name": "a.pdf"}]'))
        assert set(d) == {"attachments"}
        assert d["attachments"]["old"] is None

    def test_missing_related_key_treated_as_empty(self):
        old = {"title": "A", "content": None, "attachments": None}
        assert compute_diff(old, _snap(content=None)) is None


def test_natural_key_orders_numeric_segments():
    ids = ["QP-01-10", "QP-01-2", "QP-01-1-3", "QP-01-1"]
    assert sorted(ids, key=natural_key) == ["QP-01-1", "QP-01-1-3", "QP-01-2", "QP-01-10"]


class TestPayloads:
    def test_create_requires_title(self):
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "   "})

    def test_related_items_accept_ids_and_dicts(self):
        p = build_payload("CREATE", {"title": "T", "related_items": [4, {"id": 5, "description": "depends on"}]})
        assert isinstance(p, CreateItemPayload)
        assert p.related_items == [RelatedItemRef(id=4), RelatedItemRef(id=5, description="depends on")]

    def test_malformed_related_reference_rejected(self):
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "T", "related_items": [{"full_id": "P-1"}]})
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "T", "related_items": [True]})

    def test_update_without_related_items_leaves_relations_untouched(self):
        p = build_payload("UPDATE", {"title": "T"})
        assert isinstance(p, UpdateItemPayload)
        assert p.related_items is None

    def test_stored_payload_round_trip(self):
        p = build_payload("UPDATE", {"title": "T", "content": "c", "related_items": [{"id": 9}]})
        assert parse_payload("UPDATE", dump_payload(p)) == p

    def test_corrupt_stored_payload(self):
        with pytest.raises(ValidationError):
            parse_payload("CREATE", "{not json")

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            build_payload("ARCHIVE", {"title": "T"})

    def test_content_and_description_must_be_text(self):
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "T", "content": {"html": "<p>x</p>"}})
        with pytest.raises(ValidationError):
            build_payload("UPDATE", {"title": "T", "content": ["a"]})
        with pytest.raises(ValidationError):
            build_payload("PROJECT_UPDATE", {"title": "T", "description": 3})
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "T", "related_items": [{"id": 2, "description": {"k": 1}}]})
        assert build_payload("CREATE", {"title": "T", "content": "<p>x</p>"}).content == "<p>x</p>"

    def test_title_limited_to_column_width(self):
        assert build_payload("CREATE", {"title": "x" * 255}).title == "x" * 255
        with pytest.raises(ValidationError):
            build_payload("CREATE", {"title": "x" * 256})
        with pytest.raises(ValidationError):
            build_payload("PROJECT_UPDATE", {"title": "y" * 300})


def _req(id, status, *, prev=None, minutes=0, reviewer="insp", note=None):
    t0 = datetime(2026, 1, 1, 9, 0)
    return SimpleNamespace(
        id=id,
        status=status,
        previous_request_id=prev,
        submitter_display="ed",
        submit_reason=None,
        reviewer_display=reviewer if status != "PENDING" else None,
        review_note=note,
        created_at=t0 + timedelta(minutes=minutes),
        reviewed_at=t0 + timedelta(minutes=minutes + 1) if status != "PENDING" else None,
        updated_at=t0 + timedelta(minutes=minutes + 1),
    )


def test_review_timeline_rounds_oldest_first():
    chain = [
        _req(3, "APPROVED", prev=2, minutes=20, note="ok"),
        _req(2, "RESUBMITTED", prev=1, minutes=10, note="still wrong"),
        _req(1, "RESUBMITTED", minutes=0, note="fix title"),
    ]
    rounds = build_review_timeline(chain)
    assert [[e["type"] for e in r] for r in rounds] == [
        ["SUBMISSION", "REJECTION"],
        ["RESUBMISSION", "REJECTION"],
        ["RESUBMISSION", "APPROVAL"],
    ]
    assert rounds[0][1]["note"] == "fix title"


def test_review_timeline_pending_round_has_no_outcome():
    rounds = build_review_timeline([_req(1, "PENDING")])
    assert [e["type"] for e in rounds[0]] == ["SUBMISSION"]
