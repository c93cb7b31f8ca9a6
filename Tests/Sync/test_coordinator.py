# test_coordinator.py
#
# Sync cycles: pull then push, the summary message, debouncing and the periodic loop.
#
# Imports
import asyncio
#
# Third-Party Imports
import pytest
#
# Local Imports
from taskbook.tasks_api.exceptions import APIConnectionError
from taskbook.tasks_api.schemas import Label, Project, Task
from taskbook.Sync.coordinator import SyncCoordinator
from taskbook.Sync.messages import MutationFlushed, MutationRequeued, ResourceLoaded, SyncCycleFinished
#
#######################################################################################################################
#
# Functions:

pytestmark = pytest.mark.asyncio


@pytest.fixture
def coordinator(repo, posted):
    return SyncCoordinator(repo, post_message=posted.append, interval_seconds=3600)


async def test_cycle_pulls_then_pushes(coordinator, repo, api, seed, posted):
    api.projects = [Project(id="p1", name="Work")]
    api.labels = [Label(id="l1", name="home")]
    seed("t1")
    api.add_task(Task(id="t2", project_id="p1", content="From another device"))
    repo.close_task("t1")

    summary = await coordinator.run_cycle()

    assert isinstance(summary, SyncCycleFinished)
    assert (summary.refreshed, summary.flushed, summary.conflicted, summary.requeued) == (4, 1, 0, 0)
    assert summary.errors == []
    loaded = [(m.resource, m.scope_id) for m in posted if isinstance(m, ResourceLoaded)]
    assert loaded == [("projects", ""), ("labels", ""), ("tasks", "p1"), ("sections", "p1")]
    assert isinstance(posted[-2], MutationFlushed)
    assert posted[-1] is summary
    assert [t.id for t in repo.get_cached("tasks", "p1")] == ["t2"]
    assert api.tasks["t1"].checked is True


async def test_second_cycle_skips_fresh_resources(coordinator, api):
    api.projects = [Project(id="p1")]
    await coordinator.run_cycle()

    summary = await coordinator.run_cycle()

    assert summary.refreshed == 0
    assert api.call_count("get_projects") == 1
    assert api.call_count("get_tasks") == 1


async def test_offline_cycle_reports_errors_and_keeps_queue(coordinator, repo, api, seed, posted):
    seed("t1")
    repo.close_task("t1")
    api.fail("get_projects", APIConnectionError("offline"))
    api.fail("get_labels", APIConnectionError("offline"))
    api.fail("close_task", APIConnectionError("offline"))

    summary = await coordinator.run_cycle()

    assert summary.requeued == 1
    assert summary.flushed == 0
    assert summary.errors[0].startswith("projects: ")
    assert summary.errors[1].startswith("labels: ")
    assert summary.errors[2].startswith("mutation ")
    assert repo.pending_count() == 1
    assert any(isinstance(m, MutationRequeued) for m in posted)


async def test_batched_cycle_uses_command_endpoint(repo, api, seed, posted):
    coordinator = SyncCoordinator(repo, post_message=posted.append, use_batch=True, batch_size=5)
    seed("t1")
    seed("t2")
    repo.close_task("t1")
    repo.delete_task("t2")

    summary = await coordinator.run_cycle()

    assert summary.flushed == 2
    assert api.call_count("submit_commands") == 1
    assert api.call_count("close_task") == 0


async def test_request_sync_joins_running_cycle(coordinator, api):
    gate = api.hold("get_projects")

    first = coordinator.request_sync()
    second = coordinator.request_sync()
    assert first is second

    gate.set()
    await first
    third = coordinator.request_sync()
    assert third is not first
    await third


async def test_start_recovers_and_runs_first_cycle(repo, seed, db, api):
    finished = asyncio.Event()
    messages = []

    def sink(message):
        messages.append(message)
        if isinstance(message, SyncCycleFinished):
            finished.set()

    coordinator = SyncCoordinator(repo, post_message=sink, interval_seconds=3600)
    seed("t1")
    repo.close_task("t1")
    db.claim_next_pending_mutation()  # left "flushing" by a previous run

    coordinator.start()
    assert coordinator.running
    assert coordinator.start() is coordinator._loop_task
    await asyncio.wait_for(finished.wait(), timeout=5)
    await coordinator.stop()

    assert not coordinator.running
    assert any(isinstance(m, MutationFlushed) for m in messages)
    assert db.list_mutations() == []


async def test_loop_survives_failed_cycle(coordinator, mocker):
    coordinator.interval_seconds = 0
    calls = []

    def flaky_cycle():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("boom")
        return SyncCycleFinished(0, 0, 0, 0)

    mocker.patch.object(coordinator, "run_cycle", side_effect=flaky_cycle)

    coordinator.start()
    for _ in range(200):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0)
    await coordinator.stop()

    assert len(calls) >= 2


async def test_stop_without_start(coordinator):
    await coordinator.stop()
    assert not coordinator.running

#
# End of test_coordinator.py
#######################################################################################################################
