import pytest

from app.task_board import CARD_DRAGGING, CARD_IDLE, CARD_PENDING, OUTCOME_COMMITTED, OUTCOME_REVERTED, TaskBoard
from app.task_gateway import MutationError, MutationGateway


class RecordingGateway(MutationGateway):
    """Holds every submitted mutation until the test settles it."""

    def __init__(self):
        self.submitted = []

    def _submit(self, mutation):
        self.submitted.append(mutation)
        return mutation

    def updates(self):
        return [m for m in self.submitted if m.kind == "update"]


class ExplodingGateway(MutationGateway):
    def _submit(self, mutation):
        raise MutationError("network_error", "offline")


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_task(task_id, status, **extra):
    task = {
        "id": task_id,
        "status": status,
        "title": f"Task {task_id}",
        "size": "M",
        "priority": 2,
        "description": None,
        "due_date": None,
        "assigned_to": None,
    }
    task.update(extra)
    return task


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def clock():
    return FakeClock()


def make_board(gateway, clock, tasks, owner=False, stale_after=300):
    return TaskBoard(tasks, gateway, is_project_owner=owner, project_id=7, stale_after=stale_after, clock=clock)


def test_collaborator_move_is_optimistic_then_committed(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])

    assert board.drag_start(1)
    assert board.card_state(1) == CARD_DRAGGING
    assert board.drop_targets() == ["IN_PROGRESS"]
    assert board.drop("IN_PROGRESS")

    assert board.get_task(1)["status"] == "IN_PROGRESS"
    assert board.card_state(1) == CARD_PENDING
    assert board.drag is None
    [mutation] = gateway.updates()
    assert mutation.task_id == 1
    assert mutation.payload == {"status": "IN_PROGRESS"}

    mutation.resolve(make_task(1, "IN_PROGRESS", updated_at="2026-10-19T10:00:00+00:00"))
    assert board.card_state(1) == CARD_IDLE
    assert board.outcomes[1] == OUTCOME_COMMITTED
    assert board.get_task(1)["updated_at"] == "2026-10-19T10:00:00+00:00"


def test_failed_move_reverts_to_exact_prior_state(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO", title="Keep me", assigned_to=4)])
    before = board.snapshot()

    board.drag_start(1)
    board.drop("IN_PROGRESS")
    gateway.updates()[0].reject(MutationError("transition_forbidden", status=403))
    board.drag_end()

    assert board.snapshot() == before
    assert board.card_state(1) == CARD_IDLE
    assert board.outcomes[1] == OUTCOME_REVERTED
    assert board.columns()[0] == ("TODO", [before[1]])


def test_illegal_drop_leaves_board_untouched_and_sends_nothing(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "IN_PROGRESS")])
    before = board.snapshot()

    assert board.drag_start(1)
    assert not board.drop("VALIDATED")

    assert board.snapshot() == before
    assert gateway.submitted == []
    assert board.drag is None
    assert board.card_state(1) == CARD_IDLE


def test_same_column_drop_is_a_cancelled_move(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], owner=True)
    board.drag_start(1)
    assert not board.drop("TODO")
    assert gateway.submitted == []
    assert board.card_state(1) == CARD_IDLE


def test_cards_without_legal_destinations_are_not_draggable(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "IN_REVIEW"), make_task(2, "VALIDATED"), make_task(3, "WEIRD")])
    assert not board.drag_start(1)
    assert not board.drag_start(2)
    assert not board.drag_start(3)
    assert not board.drag_start(99)
    assert board.drag is None

    board.is_project_owner = True
    assert board.drag_start(1)


def test_drag_end_destroys_session_without_mutation(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    board.drag_start(1)
    board.drag_end()
    assert board.drag is None
    assert not board.drop("IN_PROGRESS")
    assert gateway.submitted == []


def test_pending_card_cannot_be_dragged_again_but_others_can(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO"), make_task(2, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    assert not board.drag_start(1)
    assert board.drag_start(2)
    assert board.drop("IN_PROGRESS")
    assert [m.task_id for m in gateway.updates()] == [1, 2]

    # Settle out of order; each card resolves independently.
    gateway.updates()[1].reject(MutationError("server_error"))
    gateway.updates()[0].resolve(make_task(1, "IN_PROGRESS"))
    assert board.get_task(1)["status"] == "IN_PROGRESS"
    assert board.get_task(2)["status"] == "TODO"
    assert not board.is_pending(1) and not board.is_pending(2)


def test_forged_session_on_pending_task_sends_no_second_update(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], owner=True)
    board.drag_start(1)
    session = board.drag
    board.drop("IN_PROGRESS")

    assert not board.handle_drop(session, "BLOCKED")
    assert len(gateway.updates()) == 1


def test_drop_revalidates_against_current_status(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    board.drag_start(1)
    # Someone else moved the card while it was being dragged.
    board.apply_remote_task(make_task(1, "IN_REVIEW"))

    assert not board.drop("IN_PROGRESS")
    assert gateway.submitted == []
    assert board.get_task(1)["status"] == "IN_REVIEW"


def test_privilege_is_read_at_drop_time(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], owner=True)
    board.drag_start(1)
    board.is_project_owner = False
    assert not board.drop("VALIDATED")
    assert gateway.submitted == []


def test_stale_records_are_rejected_until_refreshed(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], stale_after=10)
    clock.now += 11
    board.drag_start(1)
    assert not board.drop("IN_PROGRESS")

    board.replace_tasks([make_task(1, "TODO")])
    board.drag_start(1)
    assert board.drop("IN_PROGRESS")


def test_remote_update_during_pending_is_applied_after_revert(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    board.apply_remote_task(make_task(1, "TODO", title="Renamed elsewhere"))
    assert board.get_task(1)["status"] == "IN_PROGRESS"

    gateway.updates()[0].reject(MutationError("stale"))
    assert board.get_task(1) == make_task(1, "TODO", title="Renamed elsewhere")


def test_refresh_keeps_optimistic_card_while_pending(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO"), make_task(2, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    board.replace_tasks([make_task(1, "TODO"), make_task(2, "IN_PROGRESS"), make_task(3, "TODO")])
    assert board.get_task(1)["status"] == "IN_PROGRESS"
    assert board.get_task(3) is not None

    gateway.updates()[0].resolve(make_task(1, "IN_PROGRESS"))
    assert board.get_task(1)["status"] == "IN_PROGRESS"


def test_gateway_refusing_synchronously_reverts(clock):
    board = make_board(ExplodingGateway(), clock, [make_task(1, "TODO")])
    board.drag_start(1)
    assert board.drop("IN_PROGRESS")
    assert board.get_task(1)["status"] == "TODO"
    assert board.outcomes[1] == OUTCOME_REVERTED
    assert not board.is_pending(1)


def test_columns_follow_board_views(gateway, clock):
    tasks = [make_task(1, "TODO"), make_task(2, "BLOCKED"), make_task(3, "TRASH"), make_task(4, "IN_REVIEW")]
    board = make_board(gateway, clock, tasks)
    assert board.column_counts("ACTIVE") == {"TODO": 1, "IN_PROGRESS": 0, "IN_REVIEW": 1, "VALIDATED": 0}
    assert board.column_counts("INACTIVE") == {"TODO": 1, "BLOCKED": 1, "TRASH": 1}


def test_editor_offers_current_status_plus_allowed_targets(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO", priority=1)])
    editor = board.open_editor(1)
    assert editor["status_options"] == ["TODO", "IN_PROGRESS"]
    assert editor["values"]["priority_label"] == "Urgent & Important"
    assert editor["can_delete"] is False

    board.is_project_owner = True
    assert board.open_editor(1)["can_delete"] is True

    blank = board.open_editor(status="BLOCKED")
    assert blank["task_id"] is None
    assert blank["values"]["status"] == "BLOCKED"


def test_save_refuses_transition_the_actor_lost(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], owner=True)
    editor = board.open_editor(1)
    assert "VALIDATED" in editor["status_options"]

    board.is_project_owner = False
    values = dict(editor["values"], status="VALIDATED")
    assert board.save_task(1, values) is None
    assert gateway.submitted == []


def test_save_sends_full_form_and_applies_result(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    values = dict(board.open_editor(1)["values"], title="Sharper title", priority_label="Urgent", status="TODO")
    done = []

    mutation = board.save_task(1, values, on_success=done.append)
    assert mutation.payload["title"] == "Sharper title"
    assert mutation.payload["priority"] == 2
    assert mutation.payload["description"] is None

    mutation.resolve(make_task(1, "TODO", title="Sharper title"))
    assert board.get_task(1)["title"] == "Sharper title"
    assert len(done) == 1


def test_create_defaults_to_todo(gateway, clock):
    board = make_board(gateway, clock, [])
    assert board.create_task({"title": "  "}) is None

    mutation = board.create_task({"title": "New thing", "priority_label": "Important"})
    assert mutation.kind == "create"
    assert mutation.payload["status"] == "TODO"
    assert mutation.payload["project_id"] == 7
    assert mutation.payload["priority"] == 3

    mutation.resolve(make_task(11, "TODO", title="New thing"))
    assert board.columns()[0][1][0]["id"] == 11


def test_delete_requires_owner_and_deletable_status(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TRASH"), make_task(2, "IN_PROGRESS")])
    assert board.delete_task(1) is None

    board.is_project_owner = True
    assert board.delete_task(2) is None
    mutation = board.delete_task(1)
    assert mutation.kind == "delete"
    mutation.resolve(None)
    assert board.get_task(1) is None


class BrokenGateway(MutationGateway):
    def _submit(self, mutation):
        raise RuntimeError("cannot schedule new futures after shutdown")


def test_gateway_crash_on_submit_reverts_without_raising(clock):
    board = make_board(BrokenGateway(), clock, [make_task(1, "TODO")])
    before = board.snapshot()
    board.drag_start(1)
    assert board.drop("IN_PROGRESS")
    assert board.snapshot() == before
    assert board.outcomes[1] == OUTCOME_REVERTED
    assert not board.is_pending(1)
    assert board.can_drag(1)


def test_remote_delete_during_pending_removes_card_after_revert(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO"), make_task(2, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    board.remove_remote_task(1)
    assert board.get_task(1)["status"] == "IN_PROGRESS"

    gateway.updates()[0].reject(MutationError("not_found", status=404))
    assert board.get_task(1) is None
    assert not board.is_pending(1)
    assert board.column_counts()["TODO"] == 1


def test_remote_delete_during_pending_removes_card_after_commit(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    board.replace_tasks([])
    assert board.get_task(1) is not None

    gateway.updates()[0].resolve(make_task(1, "IN_PROGRESS"))
    assert board.get_task(1) is None


def test_remote_record_after_delete_keeps_card(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    board.drag_start(1)
    board.drop("IN_PROGRESS")

    board.remove_remote_task(1)
    board.apply_remote_task(make_task(1, "BLOCKED"))
    gateway.updates()[0].reject(MutationError("stale"))
    assert board.get_task(1)["status"] == "BLOCKED"


def test_drag_over_tracks_candidate_column(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")])
    assert not board.drag_over("IN_PROGRESS")

    board.drag_start(1)
    assert board.drag.source_status == "TODO"
    assert not board.drag_over("VALIDATED")
    assert board.drag_over("IN_PROGRESS")
    assert board.drag.candidate_target_status == "IN_PROGRESS"

    assert board.drop()
    assert gateway.updates()[0].payload == {"status": "IN_PROGRESS"}


def test_card_moved_under_drag_highlights_nothing(gateway, clock):
    board = make_board(gateway, clock, [make_task(1, "TODO")], owner=True)
    board.drag_start(1)
    board.apply_remote_task(make_task(1, "BLOCKED"))
    assert board.drop_targets() == []
    assert not board.drag_over("IN_PROGRESS")
