# Tests/Sync/conftest.py
#
# Shared fixtures for the sync layer: an in-memory cache with a controllable clock and the stub
# remote service from fake_tasks_api.
#
# Imports
#
# Third-Party Imports
import pytest
#
# Local Imports
from taskbook.DB.Task_Cache_DB import TaskCacheDB
from taskbook.tasks_api.schemas import Task
from taskbook.Sync.repository import TaskRepository
from fake_tasks_api import FakeClock, FakeTasksAPI
#
########################################################################################################################
#
# --- Fixtures ---

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(clock):
    cache = TaskCacheDB(":memory:", ttl_seconds=60, clock=clock)
    yield cache
    cache.close_connection()


@pytest.fixture
def api():
    return FakeTasksAPI()


@pytest.fixture
def posted():
    """Messages the repository posts from background work."""
    return []


@pytest.fixture
def repo(db, api, posted, clock):
    return TaskRepository(db, api, post_message=posted.append, clock=clock)


@pytest.fixture
def make_task():
    def _make(task_id="t1", content="Write report", project_id="p1", **overrides) -> Task:
        return Task(id=task_id, content=content, project_id=project_id, **overrides)
    return _make


@pytest.fixture
def seed(db, api, make_task):
    """Puts the same task on the server and in the cache, as after a refresh."""
    def _seed(task_id="t1", content="Write report", project_id="p1", **overrides) -> Task:
        task = make_task(task_id, content, project_id, **overrides)
        api.add_task(task)
        db.upsert_entity("task", task.model_dump(), scope_id=project_id)
        return task
    return _seed

#
# End of conftest.py
########################################################################################################################
