"""
Central constants for the RDMS application.
"""
from __future__ import annotations

# Stamped on approvals and QC/PM sign-offs when the reviewer leaves no note.
DEFAULT_REVIEW_NOTE = "Approved"

REQUEST_TYPE_LABELS = {
    "CREATE": "create item",
    "UPDATE": "update item",
    "DELETE": "delete item",
    "PROJECT_UPDATE": "update project",
    "PROJECT_DELETE": "delete project",
}

# Matches the String(255) title columns on projects, items and item_histories.
TITLE_MAX_LENGTH = 255
