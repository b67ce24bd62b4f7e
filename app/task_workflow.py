"""Task lifecycle vocabulary and transition policy.

Every status decision (board drag gate, editor save, HTTP API) goes through the
functions in this module so the three paths cannot drift apart.
"""

from __future__ import annotations

import os
from typing import Dict, FrozenSet, List, Optional, Tuple

TASK_STATUSES: Tuple[str, ...] = (
    "TODO",
    "IN_PROGRESS",
    "IN_REVIEW",
    "VALIDATED",
    "BLOCKED",
    "TRASH",
)
DEFAULT_TASK_STATUS = "TODO"
TASK_SIZES: Tuple[str, ...] = ("XS", "S", "M", "L")
DEFAULT_TASK_SIZE = "M"

PRIORITY_LABELS: List[str] = [
    "Urgent & Important",
    "Urgent",
    "Important",
    "Low priority",
]
PRIORITY_VALUE: Dict[str, int] = {label: idx for idx, label in enumerate(PRIORITY_LABELS, start=1)}

BOARD_VIEW_STATUSES: Dict[str, Tuple[str, ...]] = {
    "ACTIVE": ("TODO", "IN_PROGRESS", "IN_REVIEW", "VALIDATED"),
    "INACTIVE": ("TODO", "BLOCKED", "TRASH"),
}

# Collaborators only push work forward through the active progression.
COLLABORATOR_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "TODO": ("IN_PROGRESS",),
    "IN_PROGRESS": ("IN_REVIEW",),
}

# Work in progress, under review or accepted is never deletable, whatever the configuration says.
NEVER_DELETABLE: FrozenSet[str] = frozenset({"IN_PROGRESS", "IN_REVIEW", "VALIDATED"})


def parse_deletable_statuses(raw: Optional[str]) -> FrozenSet[str]:
    """Normalize a comma separated status list into the deletable set.

    Unknown names and statuses holding active work are dropped. An empty or
    missing value falls back to the default set.
    """
    if raw is None or not raw.strip():
        return frozenset({"TODO", "BLOCKED", "TRASH"})
    picked = {token.strip().upper() for token in raw.split(",") if token.strip()}
    return frozenset(s for s in picked if s in TASK_STATUSES and s not in NEVER_DELETABLE)


DELETABLE_STATUSES: FrozenSet[str] = parse_deletable_statuses(os.environ.get("TEAMBOARD_DELETABLE_STATUSES"))


def is_task_status(value: object) -> bool:
    return isinstance(value, str) and value in TASK_STATUSES


def priority_label(value: Optional[int]) -> str:
    if isinstance(value, int) and 1 <= value <= len(PRIORITY_LABELS):
        return PRIORITY_LABELS[value - 1]
    return PRIORITY_LABELS[-1]


def get_allowed_task_transitions(from_status: object, is_project_owner: bool) -> List[str]:
    """Return the statuses an actor may move a task to, in board order.

    The source status is never part of the result. An unrecognized source
    yields an empty list for owners and collaborators alike.
    """
    if not is_task_status(from_status):
        return []
    if is_project_owner:
        return [status for status in TASK_STATUSES if status != from_status]
    allowed = COLLABORATOR_TRANSITIONS.get(str(from_status), ())
    return [status for status in TASK_STATUSES if status in allowed]


def can_transition_task_status(from_status: object, to_status: object, is_project_owner: bool) -> bool:
    # Same-column drops are cancellations, handled by callers before asking.
    return to_status in get_allowed_task_transitions(from_status, is_project_owner)


def can_delete_task_by_status(status: object, deletable: Optional[FrozenSet[str]] = None) -> bool:
    """Data-integrity rule only; who may delete is checked elsewhere."""
    if not is_task_status(status):
        return False
    allowed = DELETABLE_STATUSES if deletable is None else deletable
    return status in allowed and status not in NEVER_DELETABLE
