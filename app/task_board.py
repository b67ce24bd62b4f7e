"""Board state and drag-and-drop reconciliation.

`TaskBoard` owns the local copy of a project's tasks. A legal drop is painted
immediately, sent to the mutation gateway, and then either committed with the
server's record or reverted to the exact snapshot taken at drop time.

Card lifecycle: idle -> dragging -> pending -> (committed | reverted) -> idle.
"""

from __future__ import annotations

import copy
import os
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from app.task_gateway import Mutation, MutationError, MutationGateway
from app.task_workflow import (
    BOARD_VIEW_STATUSES,
    DEFAULT_TASK_SIZE,
    DEFAULT_TASK_STATUS,
    PRIORITY_VALUE,
    can_delete_task_by_status,
    can_transition_task_status,
    get_allowed_task_transitions,
    priority_label,
)

STALE_AFTER_SECONDS = max(0.0, float(os.environ.get("TEAMBOARD_STALE_AFTER_SECONDS", "300")))

CARD_IDLE = "idle"
CARD_DRAGGING = "dragging"
CARD_PENDING = "pending"
OUTCOME_COMMITTED = "committed"
OUTCOME_REVERTED = "reverted"

EDITABLE_FIELDS = ("title", "description", "size", "priority", "due_date", "assigned_to", "status")


@dataclass
class DragSession:
    dragging_task_id: int
    source_status: str
    candidate_target_status: Optional[str] = None


@dataclass
class PendingMove:
    task_id: int
    snapshot: Dict[str, Any]
    target_status: str
    mutation: Optional[Mutation] = None
    remote: Optional[Dict[str, Any]] = None
    remote_deleted: bool = False


class TaskBoard:
    """Optimistic task board for one project and one actor.

    `is_project_owner` is read at every decision point, so flipping it between
    events takes effect on the next drag, drop, or save.
    """

    def __init__(
        self,
        tasks: Iterable[Dict[str, Any]],
        gateway: MutationGateway,
        is_project_owner: bool = False,
        project_id: Optional[int] = None,
        stale_after: float = STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.is_project_owner = is_project_owner
        self.project_id = project_id
        self.stale_after = stale_after
        self._clock = clock
        self.tasks: Dict[int, Dict[str, Any]] = {}
        self._synced_at: Dict[int, float] = {}
        self._pending: Dict[int, PendingMove] = {}
        self.outcomes: Dict[int, str] = {}
        self.drag: Optional[DragSession] = None
        self.replace_tasks(tasks)

    # -------------------- read model --------------------

    def get_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        return self.tasks.get(task_id)

    def snapshot(self) -> Dict[int, Dict[str, Any]]:
        return copy.deepcopy(self.tasks)

    def columns(self, view: str = "ACTIVE") -> List[Tuple[str, List[Dict[str, Any]]]]:
        statuses = BOARD_VIEW_STATUSES.get(view, BOARD_VIEW_STATUSES["ACTIVE"])
        return [(status, [t for t in self.tasks.values() if t.get("status") == status]) for status in statuses]

    def column_counts(self, view: str = "ACTIVE") -> Dict[str, int]:
        return {status: len(items) for status, items in self.columns(view)}

    def card_state(self, task_id: int) -> str:
        if task_id in self._pending:
            return CARD_PENDING
        if self.drag is not None and self.drag.dragging_task_id == task_id:
            return CARD_DRAGGING
        return CARD_IDLE

    def is_pending(self, task_id: int) -> bool:
        return task_id in self._pending

    def can_drag(self, task_id: int) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task_id in self._pending:
            return False
        return bool(get_allowed_task_transitions(task.get("status"), self.is_project_owner))

    def drop_targets(self) -> List[str]:
        """Columns the current drag may land on, for highlighting."""
        if self.drag is None:
            return []
        task = self.tasks.get(self.drag.dragging_task_id)
        # A card that changed columns under the pointer highlights nothing.
        if task is None or task.get("status") != self.drag.source_status:
            return []
        return get_allowed_task_transitions(self.drag.source_status, self.is_project_owner)

    # -------------------- remote sync --------------------

    def replace_tasks(self, tasks: Iterable[Dict[str, Any]]) -> None:
        """Swap in a fresh server listing, keeping optimistic cards in place."""
        incoming: Dict[int, Dict[str, Any]] = {}
        for raw in tasks:
            incoming[int(raw["id"])] = dict(raw)
        for task_id, pending in self._pending.items():
            if task_id in incoming:
                pending.remote = incoming[task_id]
                pending.remote_deleted = False
            else:
                pending.remote = None
                pending.remote_deleted = True
            incoming[task_id] = self.tasks[task_id]
        now = self._clock()
        self.tasks = incoming
        self._synced_at = {task_id: now for task_id in incoming}

    def apply_remote_task(self, task: Dict[str, Any]) -> None:
        task_id = int(task["id"])
        pending = self._pending.get(task_id)
        if pending is not None:
            pending.remote = dict(task)
            pending.remote_deleted = False
            return
        self.tasks[task_id] = dict(task)
        self._synced_at[task_id] = self._clock()

    def remove_remote_task(self, task_id: int) -> None:
        pending = self._pending.get(task_id)
        if pending is not None:
            # The card stays put until the move settles, then leaves the board.
            pending.remote = None
            pending.remote_deleted = True
            return
        self.tasks.pop(task_id, None)
        self._synced_at.pop(task_id, None)

    def _fresh_task(self, task_id: int) -> Optional[Dict[str, Any]]:
        task = self.tasks.get(task_id)
        if task is None:
            return None
        if self.stale_after and self._clock() - self._synced_at.get(task_id, float("-inf")) > self.stale_after:
            return None
        return task

    # -------------------- drag and drop --------------------

    def drag_start(self, task_id: int) -> bool:
        if not self.can_drag(task_id):
            return False
        # A missed dragend must not leave a ghost session behind.
        self.drag = DragSession(dragging_task_id=task_id, source_status=str(self.tasks[task_id]["status"]))
        return True

    def drag_over(self, target_status: str) -> bool:
        """Track the column under the pointer. True when it would accept the drop."""
        if self.drag is None:
            return False
        self.drag.candidate_target_status = target_status
        return target_status in self.drop_targets()

    def drag_end(self) -> None:
        self.drag = None

    def drop(self, target_status: Optional[str] = None) -> bool:
        session, self.drag = self.drag, None
        if target_status is None and session is not None:
            target_status = session.candidate_target_status
        return self.handle_drop(session, target_status)

    def handle_drop(self, session: Optional[DragSession], target_status: Optional[str]) -> bool:
        """Validate a drop against the current record and start the optimistic move."""
        if session is None or target_status is None:
            return False
        task_id = session.dragging_task_id
        if task_id in self._pending:
            return False
        task = self._fresh_task(task_id)
        if task is None:
            return False
        source_status = task.get("status")
        if target_status == source_status:
            return False
        if not can_transition_task_status(source_status, target_status, self.is_project_owner):
            return False

        pending = PendingMove(task_id=task_id, snapshot=copy.deepcopy(task), target_status=target_status)
        self._pending[task_id] = pending
        self.outcomes.pop(task_id, None)
        optimistic = dict(task)
        optimistic["status"] = target_status
        self.tasks[task_id] = optimistic
        try:
            pending.mutation = self.gateway.update(
                task_id,
                {"status": target_status},
                on_success=partial(self._commit_move, pending),
                on_error=partial(self._revert_move, pending),
                on_settled=partial(self._settle_move, pending),
            )
        except Exception as exc:
            if self._pending.get(task_id) is pending:
                error = exc if isinstance(exc, MutationError) else MutationError("server_error", str(exc))
                self._revert_move(pending, error)
                self._settle_move(pending, None, error)
        return True

    def _commit_move(self, pending: PendingMove, result: Any) -> None:
        if isinstance(result, dict) and int(result.get("id", pending.task_id)) == pending.task_id:
            self.tasks[pending.task_id] = dict(result)
        self._synced_at[pending.task_id] = self._clock()
        self.outcomes[pending.task_id] = OUTCOME_COMMITTED

    def _revert_move(self, pending: PendingMove, error: Optional[MutationError] = None) -> None:
        self.tasks[pending.task_id] = copy.deepcopy(pending.snapshot)
        self.outcomes[pending.task_id] = OUTCOME_REVERTED

    def _settle_move(self, pending: PendingMove, result: Any = None, error: Optional[MutationError] = None) -> None:
        if self._pending.get(pending.task_id) is not pending:
            return
        del self._pending[pending.task_id]
        if pending.remote_deleted:
            self.remove_remote_task(pending.task_id)
        elif pending.remote is not None and self.outcomes.get(pending.task_id) == OUTCOME_REVERTED:
            self.apply_remote_task(pending.remote)

    # -------------------- editor flow --------------------

    def open_editor(self, task_id: Optional[int] = None, status: str = DEFAULT_TASK_STATUS) -> Dict[str, Any]:
        """Form state for the create/edit drawer."""
        task = self.tasks.get(task_id) if task_id is not None else None
        if task is None:
            return {
                "task_id": None,
                "values": {
                    "title": "",
                    "description": "",
                    "size": DEFAULT_TASK_SIZE,
                    "priority_label": priority_label(None),
                    "due_date": "",
                    "status": status,
                },
                "status_options": [status],
                "can_delete": False,
            }
        current = task.get("status")
        return {
            "task_id": task_id,
            "values": {
                "title": task.get("title") or "",
                "description": task.get("description") or "",
                "size": task.get("size") or DEFAULT_TASK_SIZE,
                "priority_label": priority_label(task.get("priority")),
                "due_date": task.get("due_date") or "",
                "status": current,
            },
            "status_options": [current] + get_allowed_task_transitions(current, self.is_project_owner),
            "can_delete": self.is_project_owner and can_delete_task_by_status(current),
        }

    def _form_payload(self, values: Dict[str, Any]) -> Dict[str, Any]:
        payload = {key: values[key] for key in EDITABLE_FIELDS if key in values}
        if "priority_label" in values:
            payload["priority"] = PRIORITY_VALUE.get(str(values["priority_label"]), PRIORITY_VALUE["Low priority"])
        for key in ("description", "due_date"):
            if key in payload and payload[key] == "":
                payload[key] = None
        return payload

    def save_task(
        self,
        task_id: int,
        values: Dict[str, Any],
        on_success: Optional[Callable[[Any], Any]] = None,
    ) -> Optional[Mutation]:
        """Save the edit drawer. Returns None when the save is refused locally."""
        task = self.tasks.get(task_id)
        if task is None or task_id in self._pending:
            return None
        if not str(values.get("title", task.get("title") or "")).strip():
            return None
        target = values.get("status", task.get("status"))
        if target != task.get("status") and not can_transition_task_status(
            task.get("status"), target, self.is_project_owner
        ):
            return None

        def committed(result: Any) -> None:
            if isinstance(result, dict):
                self.apply_remote_task(result)
            if on_success:
                on_success(result)

        return self.gateway.update(task_id, self._form_payload(values), on_success=committed)

    def create_task(
        self,
        values: Dict[str, Any],
        on_success: Optional[Callable[[Any], Any]] = None,
    ) -> Optional[Mutation]:
        if self.project_id is None or not str(values.get("title", "")).strip():
            return None
        payload = self._form_payload(values)
        payload.setdefault("status", DEFAULT_TASK_STATUS)
        payload.setdefault("size", DEFAULT_TASK_SIZE)
        payload["project_id"] = self.project_id

        def created(result: Any) -> None:
            if isinstance(result, dict):
                self.apply_remote_task(result)
            if on_success:
                on_success(result)

        return self.gateway.create(payload, on_success=created)

    def delete_task(
        self,
        task_id: int,
        on_success: Optional[Callable[[Any], Any]] = None,
    ) -> Optional[Mutation]:
        task = self.tasks.get(task_id)
        if task is None or task_id in self._pending:
            return None
        if not (self.is_project_owner and can_delete_task_by_status(task.get("status"))):
            return None

        def deleted(result: Any) -> None:
            self.remove_remote_task(task_id)
            if on_success:
                on_success(result)

        return self.gateway.delete(task_id, on_success=deleted)
