from __future__ import annotations

import json
from typing import Any

SCALAR_FIELDS = ("title", "content", "attachments")


def _sorted_relations(relations: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    # Ascending id only; no secondary key.
    return sorted(relations or [], key=lambda r: r["id"])


def compute_diff(old: dict[str, Any], new: dict[str, Any]) -> dict[str, dict[str, Any]] | None:
    """
    Structural diff between two item snapshots.

    Returns {field: {"old": ..., "new": ...}} for changed fields, or None when
    nothing changed (never an empty dict).
    """
    diff: dict[str, dict[str, Any]] = {}

    for key in SCALAR_FIELDS:
        old_val = old.get(key)
        new_val = new.get(key)
        if old_val != new_val:
            diff[key] = {"old": old_val, "new": new_val}

    old_rel = old.get("related_items") or []
    new_rel = new.get("related_items") or []
    if json.dumps(_sorted_relations(old_rel), sort_keys=True) != json.dumps(_sorted_relations(new_rel), sort_keys=True):
        diff["related_items"] = {"old": old_rel, "new": new_rel}

    return diff or None
