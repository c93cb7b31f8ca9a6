# test_task_cache_db.py
#
#
# Imports
import sqlite3
from pathlib import Path
#
# Third-Party Imports
import pytest
#
# Local Imports
from taskbook.DB.Task_Cache_DB import TaskCacheDB, TaskCacheDBError, SchemaError, InputError
#
#######################################################################################################################
#
# Functions:


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --- Fixtures ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "task_cache.sqlite"


@pytest.fixture(scope="function")
def db_instance(db_path, clock):
    db = TaskCacheDB(db_path, ttl_seconds=60, clock=clock)
    yield db
    db.close_connection()


@pytest.fixture
def mem_db(clock):
    db = TaskCacheDB(":memory:", ttl_seconds=60, clock=clock)
    yield db
    db.close_connection()


def _task(task_id, content="Task", project_id="p1"):
    return {"id": task_id, "content": content, "project_id": project_id}


# --- Initialization ---

class TestInitialization:
    def test_creates_file_and_schema(self, db_path, clock):
        db = TaskCacheDB(db_path, clock=clock)
        try:
            assert Path(db_path).exists()
            conn = db.get_connection()
            version = conn.execute(
                "SELECT version FROM db_schema_version WHERE schema_name = 'task_cache_schema'").fetchone()
            assert version["version"] == 1
        finally:
            db.close_connection()

    def test_reopening_existing_db_keeps_data(self, db_path, clock):
        db = TaskCacheDB(db_path, clock=clock)
        db.upsert_entity("task", _task("t1"), scope_id="p1")
        db.close_connection()

        reopened = TaskCacheDB(db_path, clock=clock)
        try:
            assert reopened.get_entity("task", "t1")["content"] == "Task"
        finally:
            reopened.close_connection()

    def test_newer_schema_version_is_rejected(self, db_path, clock):
        db = TaskCacheDB(db_path, clock=clock)
        db.execute_query("UPDATE db_schema_version SET version = 99 WHERE schema_name = 'task_cache_schema'",
                         commit=True)
        db.close_connection()

        with pytest.raises(SchemaError, match="newer than supported"):
            TaskCacheDB(db_path, clock=clock)

    def test_negative_ttl_rejected(self, clock):
        with pytest.raises(InputError):
            TaskCacheDB(":memory:", ttl_seconds=-1, clock=clock)

    def test_wal_mode_for_file_db(self, db_instance):
        mode = db_instance.get_connection().execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"


# --- Entities ---

class TestEntities:
    def test_upsert_and_get(self, mem_db):
        mem_db.upsert_entity("task", _task("t1", "Buy milk"), scope_id="p1")
        assert mem_db.get_entity("task", "t1") == _task("t1", "Buy milk")
        assert mem_db.get_entities("task", "p1") == [_task("t1", "Buy milk")]
        assert mem_db.get_entities("task", "other") == []

    def test_upsert_overwrites_and_moves_scope(self, mem_db):
        mem_db.upsert_entity("task", _task("t1", "old"), scope_id="p1")
        mem_db.upsert_entity("task", _task("t1", "new", "p2"), scope_id="p2")
        assert mem_db.get_entities("task", "p1") == []
        assert mem_db.get_entities("task", "p2")[0]["content"] == "new"
        assert mem_db.count_entities("task", "p2") == 1

    def test_upsert_requires_id(self, mem_db):
        with pytest.raises(InputError):
            mem_db.upsert_entity("task", {"content": "no id"})

    def test_delete_entity_reports_whether_row_existed(self, mem_db):
        mem_db.upsert_entity("task", _task("t1"), scope_id="p1")
        assert mem_db.delete_entity("task", "t1") is True
        assert mem_db.delete_entity("task", "t1") is False

    def test_entity_types_are_separate_namespaces(self, mem_db):
        mem_db.upsert_entity("task", {"id": "1", "content": "task"})
        mem_db.upsert_entity("project", {"id": "1", "name": "project"})
        assert mem_db.get_entity("task", "1")["content"] == "task"
        assert mem_db.get_entity("project", "1")["name"] == "project"

    def test_replace_entities_swaps_scope_and_stamps_freshness(self, mem_db, clock):
        mem_db.upsert_entity("task", _task("old"), scope_id="p1")
        mem_db.upsert_entity("task", _task("elsewhere", project_id="p2"), scope_id="p2")

        written = mem_db.replace_entities("task", "p1", [_task("a"), _task("b")], resource_type="tasks")

        assert written == 2
        assert [t["id"] for t in mem_db.get_entities("task", "p1")] == ["a", "b"]
        assert mem_db.get_entity("task", "elsewhere") is not None
        assert mem_db.last_synced("tasks", "p1") == clock.now

    def test_replace_entities_leaves_pinned_rows_alone(self, mem_db):
        mem_db.upsert_entity("task", _task("edited", "local edit"), scope_id="p1")
        mem_db.upsert_entity("task", _task("pending-x", "placeholder"), scope_id="p1")

        mem_db.replace_entities("task", "p1", [_task("edited", "server value"), _task("fresh")],
                                pinned_ids={"edited", "pending-x", "closed-locally"})

        assert mem_db.get_entity("task", "edited")["content"] == "local edit"
        assert mem_db.get_entity("task", "pending-x")["content"] == "placeholder"
        assert mem_db.get_entity("task", "fresh") is not None
        assert mem_db.get_entity("task", "closed-locally") is None

    def test_replace_entities_is_all_or_nothing(self, mem_db):
        mem_db.upsert_entity("task", _task("keep"), scope_id="p1")
        with pytest.raises(InputError):
            mem_db.replace_entities("task", "p1", [_task("a"), {"content": "missing id"}])
        assert [t["id"] for t in mem_db.get_entities("task", "p1")] == ["keep"]
        assert mem_db.last_synced("task", "p1") is None


# --- Freshness ---

class TestFreshness:
    def test_never_synced_is_stale(self, mem_db):
        assert mem_db.is_stale("projects") is True
        assert mem_db.last_synced("projects") is None

    def test_stale_after_ttl(self, mem_db, clock):
        mem_db.touch_sync("projects")
        assert mem_db.is_stale("projects") is False
        clock.advance(60)
        assert mem_db.is_stale("projects") is False
        clock.advance(1)
        assert mem_db.is_stale("projects") is True

    def test_resource_ttl_override(self, clock):
        db = TaskCacheDB(":memory:", ttl_seconds=60, resource_ttls={"labels": 3600}, clock=clock)
        db.touch_sync("labels")
        db.touch_sync("projects")
        clock.advance(120)
        assert db.is_stale("labels") is False
        assert db.is_stale("projects") is True
        db.close_connection()

    def test_sync_cursor_does_not_mark_fresh(self, mem_db):
        mem_db.set_sync_cursor("tasks", "", "token-1")
        assert mem_db.get_sync_cursor("tasks") == "token-1"
        assert mem_db.is_stale("tasks") is True

    def test_touch_sync_keeps_existing_cursor(self, mem_db):
        mem_db.set_sync_cursor("tasks", "", "token-1")
        mem_db.touch_sync("tasks")
        assert mem_db.get_sync_cursor("tasks") == "token-1"
        assert mem_db.is_stale("tasks") is False


# --- Mutation queue ---

class TestMutationQueue:
    def test_enqueue_and_read_back(self, mem_db):
        snapshot = {"schema_version": 1, "entity": _task("t1")}
        mutation_id = mem_db.enqueue_mutation("task", "t1", "update", {"content": "x"}, snapshot)

        row = mem_db.get_mutation(mutation_id)
        assert row["status"] == "pending"
        assert row["payload"] == {"content": "x"}
        assert row["snapshot"] == snapshot
        assert row["attempts"] == 0
        assert row["force"] is False
        assert len(row["idempotency_key"]) == 32

    def test_enqueue_requires_action(self, mem_db):
        with pytest.raises(InputError):
            mem_db.enqueue_mutation("task", "t1", "", {})

    def test_duplicate_idempotency_key_rejected(self, mem_db):
        mem_db.enqueue_mutation("task", "t1", "close", {}, idempotency_key="k1")
        with pytest.raises(TaskCacheDBError, match="constraint"):
            mem_db.enqueue_mutation("task", "t2", "close", {}, idempotency_key="k1")

    def test_claim_is_fifo_and_marks_flushing(self, mem_db):
        first = mem_db.enqueue_mutation("task", "t1", "close", {})
        mem_db.enqueue_mutation("task", "t2", "close", {})

        claimed = mem_db.claim_next_pending_mutation()

        assert claimed["id"] == first
        assert claimed["status"] == "flushing"
        assert claimed["attempts"] == 1

    def test_claim_refused_while_another_is_flushing(self, mem_db):
        mem_db.enqueue_mutation("task", "t1", "close", {})
        mem_db.enqueue_mutation("task", "t2", "close", {})
        assert mem_db.claim_next_pending_mutation() is not None
        assert mem_db.claim_next_pending_mutation() is None

    def test_claim_skips_conflicted(self, mem_db):
        blocked = mem_db.enqueue_mutation("task", "t1", "update", {"content": "x"})
        mem_db.update_mutation_status(blocked, "conflicted", "server changed")
        nxt = mem_db.enqueue_mutation("task", "t2", "close", {})
        assert mem_db.claim_next_pending_mutation()["id"] == nxt

    def test_claim_empty_queue(self, mem_db):
        assert mem_db.claim_next_pending_mutation() is None

    def test_claim_pending_batch(self, mem_db):
        ids = [mem_db.enqueue_mutation("task", f"t{i}", "close", {}) for i in range(5)]
        batch = mem_db.claim_pending_batch(3)
        assert [r["id"] for r in batch] == ids[:3]
        assert all(r["status"] == "pending" and r["attempts"] == 1 for r in batch)

    def test_claim_pending_batch_refused_while_flushing(self, mem_db):
        mem_db.enqueue_mutation("task", "t1", "close", {})
        mem_db.enqueue_mutation("task", "t2", "close", {})
        mem_db.claim_next_pending_mutation()
        assert mem_db.claim_pending_batch(10) == []

    def test_claim_pending_batch_rejects_bad_limit(self, mem_db):
        with pytest.raises(InputError):
            mem_db.claim_pending_batch(0)

    def test_update_status_validates(self, mem_db):
        mutation_id = mem_db.enqueue_mutation("task", "t1", "close", {})
        with pytest.raises(InputError):
            mem_db.update_mutation_status(mutation_id, "done")
        assert mem_db.update_mutation_status(mutation_id, "conflicted", "boom") is True
        assert mem_db.get_mutation(mutation_id)["note"] == "boom"
        assert mem_db.update_mutation_status(9999, "pending") is False

    def test_force_flag_round_trip(self, mem_db):
        mutation_id = mem_db.enqueue_mutation("task", "t1", "update", {"content": "x"})
        mem_db.set_mutation_force(mutation_id, True)
        assert mem_db.get_mutation(mutation_id)["force"] is True

    def test_counts_and_status_map(self, mem_db):
        a = mem_db.enqueue_mutation("task", "t1", "update", {"content": "x"})
        mem_db.enqueue_mutation("task", "t1", "close", {})
        mem_db.enqueue_mutation("task", "t2", "close", {})
        mem_db.enqueue_mutation("task", "", "quick_add", {"text": "hi"})
        mem_db.update_mutation_status(a, "conflicted", "")

        assert mem_db.pending_mutation_count() == 3
        assert mem_db.conflicted_mutation_count() == 1
        assert mem_db.outstanding_entity_ids("task") == {"t1", "t2"}
        assert mem_db.mutation_status_by_entity("task") == {"t1": "conflicted", "t2": "pending"}

    def test_reset_flushing_mutations(self, mem_db):
        mem_db.enqueue_mutation("task", "t1", "close", {})
        mem_db.claim_next_pending_mutation()
        assert mem_db.reset_flushing_mutations() == 1
        assert mem_db.list_mutations("flushing") == []
        assert len(mem_db.list_mutations("pending")) == 1

    def test_delete_mutation(self, mem_db):
        mutation_id = mem_db.enqueue_mutation("task", "t1", "close", {})
        assert mem_db.delete_mutation(mutation_id) is True
        assert mem_db.get_mutation(mutation_id) is None
        assert mem_db.delete_mutation(mutation_id) is False


# --- Transactions ---

class TestTransactions:
    def test_nested_transaction_commits_once(self, mem_db):
        with mem_db.transaction():
            mem_db.upsert_entity("task", _task("a"), scope_id="p1")
            with mem_db.transaction():
                mem_db.upsert_entity("task", _task("b"), scope_id="p1")
        assert mem_db.count_entities("task", "p1") == 2

    def test_exception_rolls_back_everything(self, mem_db):
        with pytest.raises(RuntimeError):
            with mem_db.transaction():
                mem_db.upsert_entity("task", _task("a"), scope_id="p1")
                mem_db.enqueue_mutation("task", "a", "close", {})
                raise RuntimeError("boom")
        assert mem_db.get_entity("task", "a") is None
        assert mem_db.list_mutations() == []

    def test_writes_outside_transaction_are_durable(self, db_path, clock):
        db = TaskCacheDB(db_path, clock=clock)
        db.upsert_entity("task", _task("a"), scope_id="p1")
        # A second connection sees the row, so it was committed.
        other = sqlite3.connect(str(db_path))
        try:
            assert other.execute("SELECT COUNT(*) FROM entities").fetchone()[0] == 1
        finally:
            other.close()
            db.close_connection()

    def test_sql_error_is_wrapped(self, mem_db):
        with pytest.raises(TaskCacheDBError):
            mem_db.execute_query("SELECT * FROM no_such_table")


# --- Completed archive ---

class TestCompletedArchive:
    def test_save_get_delete(self, mem_db):
        mem_db.save_completed_task(_task("t1"), "2024-01-01T00:00:00Z")
        assert mem_db.get_completed_task("t1")["id"] == "t1"
        assert mem_db.delete_completed_task("t1") is True
        assert mem_db.get_completed_task("t1") is None

    def test_recently_completed_newest_first(self, mem_db):
        mem_db.save_completed_task(_task("old"), "2024-01-01T00:00:00Z")
        mem_db.save_completed_task(_task("new"), "2024-02-01T00:00:00Z")
        recent = mem_db.get_recently_completed(limit=10)
        assert [t["id"] for t in recent] == ["new", "old"]
        assert recent[0]["completed_at"] == "2024-02-01T00:00:00Z"


# --- Archived projects and collaborator names ---

class TestProjectArchiveAndUserNames:
    def test_archived_projects_newest_first(self, mem_db, clock):
        mem_db.save_archived_project({"id": "p1", "name": "Old"})
        clock.advance(10)
        mem_db.save_archived_project({"id": "p2", "name": "Newer"})

        assert [p["id"] for p in mem_db.get_archived_projects()] == ["p2", "p1"]
        assert mem_db.delete_archived_project("p1") is True
        assert mem_db.delete_archived_project("p1") is False
        assert [p["name"] for p in mem_db.get_archived_projects()] == ["Newer"]

    def test_archived_project_requires_id(self, mem_db):
        with pytest.raises(InputError):
            mem_db.save_archived_project({"name": "No id"})

    def test_user_names_upsert_and_skip_blank(self, mem_db):
        assert mem_db.upsert_user_names({"u1": "Ada", "u2": "", "": "Nobody"}) == 1
        mem_db.upsert_user_names({"u1": "Ada Lovelace", "u3": "Bo"})

        assert mem_db.get_user_names() == {"u1": "Ada Lovelace", "u3": "Bo"}

    def test_all_entities_span_scopes(self, mem_db):
        mem_db.upsert_entity("task", _task("a", project_id="p1"), scope_id="p1")
        mem_db.upsert_entity("task", _task("b", project_id="p2"), scope_id="p2")
        mem_db.upsert_entity("project", {"id": "p1"})

        assert [t["id"] for t in mem_db.get_all_entities("task")] == ["a", "b"]

#
# End of test_task_cache_db.py
#######################################################################################################################
