# test_task_cache_db_properties.py
#
# Property-based tests for the task cache queue using Hypothesis.
#
# Imports
#
# Third-Party Imports
from hypothesis import given, strategies as st, settings, HealthCheck
from hypothesis.stateful import RuleBasedStateMachine, rule, invariant
#
# Local Imports
from taskbook.DB.Task_Cache_DB import TaskCacheDB
#
########################################################################################################################
#
# Functions:

settings.register_profile(
    "db_friendly",
    deadline=1000,
    suppress_health_check=[HealthCheck.too_slow]
)
settings.load_profile("db_friendly")


class _Tick:
    """Frozen clock: every created_at ties, so queue order rests on the insertion id."""
    def __init__(self):
        self.now = 1_700_000_000.0

    def __call__(self):
        return self.now


st_actions = st.sampled_from(["create", "update", "close", "reopen", "delete", "quick_add"])
st_entity_ids = st.sampled_from(["t1", "t2", "t3", "pending-a", ""])


@given(st.lists(st.tuples(st_actions, st_entity_ids), min_size=1, max_size=25))
def test_queue_drains_in_insertion_order(entries):
    db = TaskCacheDB(":memory:", clock=_Tick())
    try:
        ids = [db.enqueue_mutation("task", entity_id, action, {}) for action, entity_id in entries]
        drained = []
        while True:
            row = db.claim_next_pending_mutation()
            if row is None:
                break
            drained.append(row["id"])
            db.delete_mutation(row["id"])
        assert drained == ids
    finally:
        db.close_connection()


@given(st.lists(st.integers(min_value=1, max_value=10), min_size=1, max_size=6))
def test_batches_cover_queue_in_order(limits):
    db = TaskCacheDB(":memory:", clock=_Tick())
    try:
        ids = [db.enqueue_mutation("task", f"t{i}", "close", {}) for i in range(20)]
        seen = []
        for limit in limits:
            batch = db.claim_pending_batch(limit)
            assert len(batch) <= limit
            seen.extend(r["id"] for r in batch)
            for r in batch:
                db.delete_mutation(r["id"])
        assert seen == ids[:len(seen)]
    finally:
        db.close_connection()


class MutationQueueMachine(RuleBasedStateMachine):
    """
    Arbitrary interleavings of enqueue, claim, complete, fail, conflict, retry and crash-recovery.
    At most one mutation is ever `flushing`, and claims always take the oldest pending one.
    """

    def __init__(self):
        super().__init__()
        self.db = TaskCacheDB(":memory:", clock=_Tick())
        self.model = {}  # id -> status
        self.order = []

    def teardown(self):
        self.db.close_connection()

    @rule(entity_id=st_entity_ids)
    def enqueue(self, entity_id):
        mutation_id = self.db.enqueue_mutation("task", entity_id, "close", {})
        self.model[mutation_id] = "pending"
        self.order.append(mutation_id)

    @rule()
    def claim(self):
        row = self.db.claim_next_pending_mutation()
        flushing = [i for i, s in self.model.items() if s == "flushing"]
        pending = [i for i in self.order if self.model.get(i) == "pending"]
        if flushing or not pending:
            assert row is None
            return
        assert row is not None and row["id"] == pending[0]
        self.model[row["id"]] = "flushing"

    def _flushing_id(self):
        return next((i for i, s in self.model.items() if s == "flushing"), None)

    @rule()
    def complete(self):
        mutation_id = self._flushing_id()
        if mutation_id is not None:
            assert self.db.delete_mutation(mutation_id)
            del self.model[mutation_id]
            self.order.remove(mutation_id)

    @rule()
    def transient_failure(self):
        mutation_id = self._flushing_id()
        if mutation_id is not None:
            self.db.update_mutation_status(mutation_id, "pending", "retry")
            self.model[mutation_id] = "pending"

    @rule()
    def conflict(self):
        mutation_id = self._flushing_id()
        if mutation_id is not None:
            self.db.update_mutation_status(mutation_id, "conflicted", "conflict")
            self.model[mutation_id] = "conflicted"

    @rule()
    def retry_conflicted(self):
        conflicted = [i for i in self.order if self.model.get(i) == "conflicted"]
        if conflicted:
            self.db.update_mutation_status(conflicted[0], "pending", "")
            self.model[conflicted[0]] = "pending"

    @rule()
    def crash_recovery(self):
        recovered = self.db.reset_flushing_mutations()
        assert recovered == sum(1 for s in self.model.values() if s == "flushing")
        for mutation_id, status in list(self.model.items()):
            if status == "flushing":
                self.model[mutation_id] = "pending"

    @invariant()
    def at_most_one_flushing(self):
        assert len(self.db.list_mutations("flushing")) <= 1

    @invariant()
    def statuses_match_model(self):
        stored = {row["id"]: row["status"] for row in self.db.list_mutations()}
        assert stored == self.model


TestMutationQueueMachine = MutationQueueMachine.TestCase

#
# End of test_task_cache_db_properties.py
########################################################################################################################
