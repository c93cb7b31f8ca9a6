# test_sync_models.py
#
# Imports
import pytest
#
# Third-Party Imports
from hypothesis import given, strategies as st
#
# Local Imports
from taskbook.tasks_api.schemas import CreateTaskRequest, Due, Task
from taskbook.Sync.models import (
    CLEAR, UNCHANGED, SetTo, TaskUpdate, Snapshot, Mutation, MutationStatus,
    CreateTaskAction, QuickAddAction, UpdateTaskAction, CloseTaskAction, ReopenTaskAction, DeleteTaskAction,
    encode_action, decode_action, new_pending_id, is_pending_id,
)
from taskbook.Sync.sync_errors import InvalidUpdateError, MutationDecodeError, SnapshotDecodeError
#
#######################################################################################################################
#
# Functions:


def test_pending_ids():
    temp_id = new_pending_id()
    assert is_pending_id(temp_id)
    assert temp_id != new_pending_id()
    assert not is_pending_id("12345")
    assert not is_pending_id("")
    assert not is_pending_id(None)


class TestTaskUpdate:
    def test_default_is_empty(self):
        update = TaskUpdate()
        assert update.is_empty()
        assert update.to_payload() == {}

    def test_payload_distinguishes_clear_from_unchanged(self):
        update = TaskUpdate(content=SetTo("New"), due_string=CLEAR)
        assert update.to_payload() == {"content": "New", "due_string": None}
        assert "description" not in update.to_payload()

    def test_from_payload_inverts_to_payload(self):
        update = TaskUpdate.from_payload({"priority": 4, "deadline_date": None, "labels": ["a"]})
        assert update.priority == SetTo(4)
        assert update.deadline_date is CLEAR
        assert update.labels == SetTo(["a"])
        assert update.content is UNCHANGED

    @pytest.mark.parametrize("kwargs", [
        {"content": CLEAR},
        {"priority": CLEAR},
        {"content": SetTo("   ")},
        {"priority": SetTo(5)},
        {"labels": SetTo("not-a-list")},
        {"description": "raw string"},
    ])
    def test_invalid_updates_rejected(self, kwargs):
        with pytest.raises(InvalidUpdateError):
            TaskUpdate(**kwargs)

    def test_unknown_payload_field_rejected(self):
        with pytest.raises(InvalidUpdateError):
            TaskUpdate.from_payload({"color": "red"})

    def test_apply_to(self):
        task = Task(id="t1", content="Old", description="notes", due=Due(string="today", date="2024-01-01"),
                    labels=["x"])
        updated = TaskUpdate(content=SetTo("New"), description=CLEAR, due_string=SetTo("tomorrow"),
                             labels=SetTo(["y", "z"])).apply_to(task)

        assert updated.content == "New"
        assert updated.description == ""
        assert updated.due.string == "tomorrow"
        assert updated.labels == ["y", "z"]
        assert task.content == "Old"

    def test_apply_clears_due_and_deadline(self):
        task = Task(id="t1", due=Due(string="today"), deadline=None)
        updated = TaskUpdate(due_string=CLEAR, deadline_date=CLEAR).apply_to(task)
        assert updated.due is None
        assert updated.deadline is None


st_field_value = {
    "content": st.text(min_size=1, max_size=20).filter(lambda s: s.strip()).map(SetTo),
    "description": st.one_of(st.just(CLEAR), st.text(max_size=20).map(SetTo)),
    "priority": st.integers(min_value=1, max_value=4).map(SetTo),
    "due_string": st.one_of(st.just(CLEAR), st.text(min_size=1, max_size=20).map(SetTo)),
    "deadline_date": st.one_of(st.just(CLEAR), st.just("2025-06-01").map(SetTo)),
    "labels": st.one_of(st.just(CLEAR), st.lists(st.text(min_size=1, max_size=5), max_size=3).map(SetTo)),
}


@st.composite
def st_task_update(draw):
    chosen = draw(st.sets(st.sampled_from(TaskUpdate.FIELDS)))
    return TaskUpdate(**{name: draw(st_field_value[name]) for name in chosen})


@given(st_task_update())
def test_payload_encoding_preserves_every_descriptor(update):
    payload = update.to_payload()
    assert set(payload) == set(update.changed_fields())
    assert TaskUpdate.from_payload(payload) == update


class TestActionCodec:
    @pytest.mark.parametrize("action", [
        CreateTaskAction(request=CreateTaskRequest(content="Buy milk", priority=2), temp_id="pending-1"),
        QuickAddAction(text="Call mom tomorrow p1", temp_id="pending-2", project_id="p1"),
        QuickAddAction(text="Anywhere"),
        UpdateTaskAction(task_id="t1", update=TaskUpdate(content=SetTo("x"), due_string=CLEAR)),
        CloseTaskAction(task_id="t1"),
        ReopenTaskAction(task_id="t1"),
        DeleteTaskAction(task_id="t1"),
    ])
    def test_encode_decode(self, action):
        name, entity_id, payload = encode_action(action)
        assert decode_action(name, entity_id, payload) == action

    def test_unknown_action_name(self):
        with pytest.raises(MutationDecodeError, match="Unknown mutation action"):
            decode_action("archive", "t1", {})

    def test_malformed_payload(self):
        with pytest.raises(MutationDecodeError):
            decode_action("create", "pending-1", {"content": ""})
        with pytest.raises(MutationDecodeError):
            decode_action("quick_add", "", {})


class TestSnapshot:
    def test_round_trip(self):
        snapshot = Snapshot.capture(Task(id="t1", content="A"))
        restored = Snapshot.from_dict(snapshot.to_dict())
        assert restored.entity == snapshot.entity
        assert restored.schema_version == 1

    def test_capture_is_a_copy(self):
        task = Task(id="t1", labels=["a"])
        snapshot = Snapshot.capture(task)
        task.labels.append("b")
        assert snapshot.entity.labels == ["a"]

    def test_unsupported_version(self):
        data = Snapshot.capture(Task(id="t1")).to_dict()
        data["schema_version"] = 2
        with pytest.raises(SnapshotDecodeError, match="schema version"):
            Snapshot.from_dict(data)

    def test_malformed_entity(self):
        with pytest.raises(SnapshotDecodeError):
            Snapshot.from_dict({"schema_version": 1, "entity": {"content": "no id"}})


class TestMutationRecord:
    def _row(self, **overrides):
        row = {
            "id": 7, "entity_type": "task", "entity_id": "t1", "action": "update",
            "payload": {"content": "New"}, "status": "pending", "idempotency_key": "abc",
            "created_at": "2024-01-01T00:00:00Z", "note": None, "attempts": 2, "force": True,
            "snapshot": Snapshot.capture(Task(id="t1", content="Old")).to_dict(),
        }
        row.update(overrides)
        return row

    def test_from_row(self):
        mutation = Mutation.from_row(self._row())
        assert mutation.action == UpdateTaskAction("t1", TaskUpdate(content=SetTo("New")))
        assert mutation.status is MutationStatus.PENDING
        assert mutation.snapshot.entity.content == "Old"
        assert mutation.force is True
        assert mutation.note == ""
        assert mutation.action_name == "update"

    def test_invalid_status(self):
        with pytest.raises(MutationDecodeError):
            Mutation.from_row(self._row(status="weird"))

    def test_bad_snapshot_is_a_decode_error(self):
        with pytest.raises(MutationDecodeError):
            Mutation.from_row(self._row(snapshot={"schema_version": 99}))

    def test_describe(self):
        assert Mutation.from_row(self._row()).describe() == 'Update "Old": content'
        close = Mutation.from_row(self._row(action="close", payload={}))
        assert close.describe() == 'Close "Old"'
        create = Mutation.from_row(self._row(action="create", entity_id="pending-1",
                                             payload={"content": "Buy milk"}, snapshot=None))
        assert create.describe() == 'Create "Buy milk"'

#
# End of test_sync_models.py
#######################################################################################################################
