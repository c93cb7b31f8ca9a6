# repository.py
# Description: Cache-first reads, optimistic writes and the mutation flush loop for tasks.
#
"""
repository.py
-------------

`TaskRepository` sits between the app and two collaborators: the local `TaskCacheDB` and
the remote `TasksAPIClient`.

Reads:
    `get_cached` never blocks. `fetch` returns cached data when it is fresh, returns stale
    data and revalidates in the background when it is old, and only waits on the network
    when the cache is empty. `refresh` always goes to the server and is single-flight per
    resource scope.

Writes:
    Each edit (create, quick add, update, close, reopen, delete) is applied to the cache
    and queued in one storage transaction, then returns at once. Nothing is sent inline.

Flush:
    `flush_next` delivers the oldest pending mutation. Only one flush runs at a time. Remote
    failures are classified as not-found (already done), transient (retry later) or permanent
    (roll back from the snapshot and mark conflicted). Updates are checked against the
    current server state first so that concurrent remote edits are surfaced instead of
    overwritten.
"""
# Imports
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type
#
# Third-Party Imports
from loguru import logger
from pydantic import BaseModel, ValidationError
from textual.message import Message
#
# Local Imports
from taskbook.DB.Task_Cache_DB import TaskCacheDB, TaskCacheDBError
from taskbook.tasks_api.client import exception_for_status, update_wire_body
from taskbook.tasks_api.schemas import (
    BatchCommand, BatchResponse, CreateProjectRequest, CreateTaskRequest, Deadline, Due, Label, Project, QuickAddRequest,
    Section, Task,
)
from taskbook.Sync.conflicts import detect_conflict
from taskbook.Sync.messages import (
    AssigneeDirectoryLoaded, MutationConflicted, MutationEnqueued, MutationFlushed, MutationRequeued, ProjectArchived,
    ProjectCreated, ProjectUnarchived, ResourceLoaded,
)
from taskbook.Sync.models import (
    ENTITY_TASK, CloseTaskAction, CreateTaskAction, DeleteTaskAction, Mutation, MutationAction, MutationStatus,
    QuickAddAction, ReopenTaskAction, Snapshot, TaskUpdate, UpdateTaskAction, encode_action, is_pending_id,
    new_pending_id,
)
from taskbook.Sync.sync_errors import (
    REMOTE_ERRORS, FailureKind, InvalidUpdateError, MutationBusyError, MutationDecodeError, MutationNotFoundError,
    StillSyncingError, TaskNotCachedError, classify_failure,
)
#
#######################################################################################################################
#
# Functions:

MessageSink = Callable[[Message], Any]

TASK_DELETED_ON_SERVER = "task deleted on server"
ENTITY_PROJECT = "project"


@dataclass(frozen=True)
class ResourceSpec:
    name: str
    entity_type: str
    model: Type[BaseModel]
    scoped: bool


RESOURCES: Dict[str, ResourceSpec] = {
    "projects": ResourceSpec("projects", ENTITY_PROJECT, Project, scoped=False),
    "labels": ResourceSpec("labels", "label", Label, scoped=False),
    "tasks": ResourceSpec("tasks", ENTITY_TASK, Task, scoped=True),
    "sections": ResourceSpec("sections", "section", Section, scoped=True),
}

# What a 404 means for each action while flushing.
_NOT_FOUND_SUCCESS = "success"
_NOT_FOUND_CONFLICT = "conflict"
_NOT_FOUND_PERMANENT = "permanent"


class TaskRepository:
    """
    Orchestrates the local cache, the mutation queue and the remote API.

    Args:
        db: The local store. Every cache and queue change goes through it.
        client: Remote API (`TasksAPIClient` or anything with the same coroutine methods).
        post_message: Receives results of background work (stale-while-revalidate refreshes).
        clock: Epoch-seconds time source, injectable for tests.
    """

    def __init__(self, db: TaskCacheDB, client, post_message: Optional[MessageSink] = None,
                 clock: Callable[[], float] = time.time):
        self.db = db
        self.client = client
        self._post_message = post_message
        self._clock = clock
        self._flush_lock = asyncio.Lock()
        self._refreshes: Dict[Tuple[str, str], asyncio.Future] = {}
        self._background: Set[asyncio.Task] = set()
        # Ids of the batch being delivered; they stay `pending` in storage meanwhile.
        self._in_flight_batch: Set[int] = set()

    def _emit(self, message: Message) -> None:
        if self._post_message is not None:
            self._post_message(message)

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(timespec='seconds').replace('+00:00', 'Z')

    @staticmethod
    def _spec(resource: str, scope_id: str = "") -> ResourceSpec:
        spec = RESOURCES.get(resource)
        if spec is None:
            raise ValueError(f"Unknown resource '{resource}'. Expected one of {sorted(RESOURCES)}.")
        if spec.scoped and not scope_id:
            raise ValueError(f"Resource '{resource}' needs a project scope.")
        return spec

    ###################################################################################################################
    # Reads
    ###################################################################################################################

    def get_cached(self, resource: str, scope_id: str = "") -> List[BaseModel]:
        """Cached entities for a scope. Never touches the network; returns [] if the cache can't be read."""
        spec = self._spec(resource, scope_id)
        try:
            return [spec.model(**row) for row in self.db.get_entities(spec.entity_type, scope_id)]
        except (TaskCacheDBError, ValidationError) as e:
            logger.warning(f"Reading cached {resource} for scope '{scope_id}' failed: {e}")
            return []

    def get_cached_task(self, task_id: str) -> Optional[Task]:
        row = self.db.get_entity(ENTITY_TASK, task_id)
        return Task(**row) if row else None

    def get_recently_completed(self, limit: int = 50) -> List[Task]:
        try:
            return [Task(**row) for row in self.db.get_recently_completed(limit)]
        except (TaskCacheDBError, ValidationError) as e:
            logger.warning(f"Reading completed tasks failed: {e}")
            return []

    def get_all_cached_tasks(self) -> List[Task]:
        """Every cached task across projects, for cross-project views such as today and search."""
        try:
            return [Task(**row) for row in self.db.get_all_entities(ENTITY_TASK)]
        except (TaskCacheDBError, ValidationError) as e:
            logger.warning(f"Reading all cached tasks failed: {e}")
            return []

    def get_project_name_map(self) -> Dict[str, str]:
        return {project.id: project.name for project in self.get_cached("projects")}

    def get_assignee_name_map(self) -> Dict[str, str]:
        try:
            return self.db.get_user_names()
        except TaskCacheDBError as e:
            logger.warning(f"Reading collaborator names failed: {e}")
            return {}

    def get_archived_projects(self) -> List[Project]:
        try:
            return [Project(**row) for row in self.db.get_archived_projects()]
        except (TaskCacheDBError, ValidationError) as e:
            logger.warning(f"Reading archived projects failed: {e}")
            return []

    async def fetch(self, resource: str, scope_id: str = "", *, wait_for_refresh: bool = False) -> ResourceLoaded:
        """
        Stale-while-revalidate read.

        - Fresh cache: cached items, `from_cache=True, stale=False`.
        - Stale but non-empty cache: cached items with `stale=True`; a background refresh is
          started and its result is posted to the message sink. With `wait_for_refresh=True`
          the refresh is awaited and returned instead.
        - Empty cache: waits for `refresh`.
        """
        spec = self._spec(resource, scope_id)
        try:
            stale = self.db.is_stale(spec.name, scope_id)
            last_synced = self.db.last_synced(spec.name, scope_id)
        except TaskCacheDBError as e:
            logger.warning(f"Freshness check for {resource} '{scope_id}' failed, treating as stale: {e}")
            stale, last_synced = True, None
        cached = self.get_cached(resource, scope_id)

        if not stale:
            return ResourceLoaded(resource, scope_id, cached, from_cache=True, stale=False, last_synced=last_synced)
        if cached and not wait_for_refresh:
            self._schedule_refresh(resource, scope_id)
            return ResourceLoaded(resource, scope_id, cached, from_cache=True, stale=True, last_synced=last_synced)
        return await self.refresh(resource, scope_id)

    async def refresh(self, resource: str, scope_id: str = "") -> ResourceLoaded:
        """Reloads a scope from the server. Concurrent calls for the same scope share one request."""
        self._spec(resource, scope_id)
        key = (resource, scope_id)
        inflight = self._refreshes.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._do_refresh(resource, scope_id))
            self._refreshes[key] = inflight

            def _forget(done: asyncio.Future, k: Tuple[str, str] = key) -> None:
                if self._refreshes.get(k) is done:
                    del self._refreshes[k]

            inflight.add_done_callback(_forget)
        else:
            logger.debug(f"Joining in-flight refresh of {resource} '{scope_id}'")
        return await asyncio.shield(inflight)

    async def _fetch_remote(self, spec: ResourceSpec, scope_id: str) -> List[BaseModel]:
        if spec.name == "projects":
            return await self.client.get_projects()
        elif spec.name == "labels":
            return await self.client.get_labels()
        elif spec.name == "tasks":
            return await self.client.get_tasks(scope_id)
        elif spec.name == "sections":
            return await self.client.get_sections(scope_id)
        raise ValueError(f"No remote loader for resource '{spec.name}'")

    async def _do_refresh(self, resource: str, scope_id: str) -> ResourceLoaded:
        spec = self._spec(resource, scope_id)
        try:
            items = await self._fetch_remote(spec, scope_id)
        except REMOTE_ERRORS as e:
            logger.warning(f"Refreshing {resource} '{scope_id}' failed: {e}")
            return self._refresh_failed(resource, scope_id, str(e))

        try:
            pinned = self.db.outstanding_entity_ids(spec.entity_type) if spec.entity_type == ENTITY_TASK else set()
            self.db.replace_entities(spec.entity_type, scope_id, [item.model_dump() for item in items],
                                     pinned_ids=pinned, resource_type=spec.name)
        except TaskCacheDBError as e:
            logger.error(f"Storing refreshed {resource} '{scope_id}' failed: {e}")
            return self._refresh_failed(resource, scope_id, f"Cache write failed: {e}")

        logger.info(f"Refreshed {resource} '{scope_id}': {len(items)} item(s)")
        return ResourceLoaded(resource, scope_id, self.get_cached(resource, scope_id), from_cache=False,
                              stale=False, last_synced=self.db.last_synced(spec.name, scope_id))

    def _refresh_failed(self, resource: str, scope_id: str, error: str) -> ResourceLoaded:
        spec = RESOURCES[resource]
        try:
            last_synced = self.db.last_synced(spec.name, scope_id)
        except TaskCacheDBError:
            last_synced = None
        return ResourceLoaded(resource, scope_id, self.get_cached(resource, scope_id), from_cache=True,
                              stale=True, last_synced=last_synced, error=error)

    def _schedule_refresh(self, resource: str, scope_id: str) -> asyncio.Task:
        async def _refresh_and_post() -> None:
            self._emit(await self.refresh(resource, scope_id))

        task = asyncio.ensure_future(_refresh_and_post())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_for_background(self) -> None:
        """Waits until every background refresh started by `fetch` has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # --- Background warming ---
    def find_stale_project_ids(self) -> List[str]:
        stale = []
        for project in self.get_cached("projects"):
            if self.db.is_stale("tasks", project.id) or self.db.is_stale("sections", project.id):
                stale.append(project.id)
        return stale

    async def warm_stale_projects(self, concurrency: int = 2,
                                  project_ids: Optional[List[str]] = None) -> List[ResourceLoaded]:
        """Refreshes tasks and sections of stale projects, at most `concurrency` projects at a time."""
        ids = self.find_stale_project_ids() if project_ids is None else project_ids
        if not ids:
            return []
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _warm(project_id: str) -> List[ResourceLoaded]:
            async with semaphore:
                return [await self.fetch("tasks", project_id, wait_for_refresh=True),
                        await self.fetch("sections", project_id, wait_for_refresh=True)]

        results = await asyncio.gather(*(_warm(pid) for pid in ids))
        return [message for pair in results for message in pair]

    ###################################################################################################################
    # Projects (sent directly, not queued)
    ###################################################################################################################

    async def create_project(self, name: str) -> ProjectCreated:
        if not name or not name.strip():
            raise InvalidUpdateError("Project name cannot be empty.")
        try:
            project = await self.client.create_project(CreateProjectRequest(name=name.strip()))
        except REMOTE_ERRORS as e:
            logger.warning(f"Creating project '{name}' failed: {e}")
            return ProjectCreated(error=str(e))
        self.db.upsert_entity(ENTITY_PROJECT, project.model_dump())
        logger.info(f"Created project {project.id} '{project.name}'")
        return ProjectCreated(project=project)

    async def archive_project(self, project_id: str) -> ProjectArchived:
        """
        Archives a project on the server. The cached copy moves to the archived list first and
        is taken back out if the server refuses.
        """
        cached = self.db.get_entity(ENTITY_PROJECT, project_id)
        if cached is not None:
            self.db.save_archived_project({**cached, "is_archived": True})
        try:
            await self.client.archive_project(project_id)
        except REMOTE_ERRORS as e:
            logger.warning(f"Archiving project {project_id} failed: {e}")
            if cached is not None:
                self.db.delete_archived_project(project_id)
            return ProjectArchived(project_id, error=str(e))
        self.db.delete_entity(ENTITY_PROJECT, project_id)
        logger.info(f"Archived project {project_id}")
        return ProjectArchived(project_id)

    async def unarchive_project(self, project_id: str) -> ProjectUnarchived:
        try:
            await self.client.unarchive_project(project_id)
        except REMOTE_ERRORS as e:
            logger.warning(f"Unarchiving project {project_id} failed: {e}")
            return ProjectUnarchived(project_id, error=str(e))
        self.db.delete_archived_project(project_id)
        loaded = await self.refresh("projects")
        project = next((p for p in loaded.items if p.id == project_id), None)
        if project is None:
            logger.warning(f"Project {project_id} was unarchived but is not in the project list yet.")
        return ProjectUnarchived(project_id, project=project)

    ###################################################################################################################
    # Collaborator directory
    ###################################################################################################################

    def _unresolved_assignees(self, names: Dict[str, str]) -> Dict[str, Set[str]]:
        """Assignee ids without a known name, mapped to the projects whose tasks reference them."""
        unresolved: Dict[str, Set[str]] = {}
        for task in self.get_all_cached_tasks():
            uid = task.responsible_uid
            if not uid or uid in names:
                continue
            projects = unresolved.setdefault(uid, set())
            if task.project_id:
                projects.add(task.project_id)
        return unresolved

    async def refresh_assignee_directory(self) -> AssigneeDirectoryLoaded:
        """
        Learns collaborator names from the current user, the workspace user list and, for
        assignees still unknown after that, the collaborators of the projects they appear in.
        Lookups fail independently; an error is only reported when no name changed.
        """
        try:
            names = self.db.get_user_names()
        except TaskCacheDBError as e:
            return AssigneeDirectoryLoaded(0, error=f"Cache read failed: {e}")
        changed: Dict[str, str] = {}
        errors: List[str] = []

        def _learn(users) -> None:
            for user in users:
                if user is None:
                    continue
                if names.get(user.id) != user.name:
                    changed[user.id] = user.name
                names[user.id] = user.name

        try:
            _learn([await self.client.get_current_user()])
        except REMOTE_ERRORS as e:
            errors.append(f"user lookup failed: {e}")

        workspace_ok = False
        try:
            _learn(await self.client.get_workspace_users())
            workspace_ok = True
        except REMOTE_ERRORS as e:
            errors.append(f"workspace users lookup failed: {e}")

        unresolved = self._unresolved_assignees(names)
        project_ids = sorted({pid for projects in unresolved.values() for pid in projects})
        for project_id in project_ids:
            try:
                _learn(await self.client.get_project_collaborators(project_id))
            except REMOTE_ERRORS as e:
                # Only reported when the workspace list failed too.
                if not workspace_ok:
                    errors.append(f"project collaborators lookup failed: {e}")

        try:
            self.db.upsert_user_names(changed)
        except TaskCacheDBError as e:
            return AssigneeDirectoryLoaded(0, error=f"Cache write failed: {e}")
        error = "; ".join(errors) if errors and not changed else None
        logger.info(f"Assignee directory refreshed: {len(changed)} name(s) updated")
        return AssigneeDirectoryLoaded(len(changed), error=error)

    ###################################################################################################################
    # Optimistic writes
    ###################################################################################################################

    def _guard(self, task_id: str) -> None:
        if is_pending_id(task_id):
            raise StillSyncingError(task_id)

    def _require_cached(self, task_id: str) -> Task:
        task = self.get_cached_task(task_id)
        if task is None:
            raise TaskNotCachedError(f"Task '{task_id}' is not in the local cache.")
        return task

    def _inbox_project_id(self) -> str:
        for project in self.get_cached("projects"):
            if project.inbox_project:
                return project.id
        return ""

    def _upsert_task(self, task: Task) -> None:
        self.db.upsert_entity(ENTITY_TASK, task.model_dump(), scope_id=task.project_id or "")

    def _enqueue(self, action: MutationAction, snapshot: Optional[Snapshot] = None) -> int:
        name, entity_id, payload = encode_action(action)
        return self.db.enqueue_mutation(ENTITY_TASK, entity_id, name, payload,
                                        snapshot.to_dict() if snapshot else None)

    def _placeholder_for_create(self, request: CreateTaskRequest, temp_id: str) -> Task:
        return Task(
            id=temp_id,
            project_id=request.project_id or self._inbox_project_id(),
            section_id=request.section_id,
            parent_id=request.parent_id,
            content=request.content,
            description=request.description or "",
            priority=request.priority or 1,
            due=Due(string=request.due_string) if request.due_string else None,
            deadline=Deadline(date=request.deadline_date) if request.deadline_date else None,
            labels=list(request.labels or []),
            added_at=self._now_iso(),
        )

    def _placeholder_for_quick_add(self, action: QuickAddAction) -> Task:
        return Task(id=action.temp_id, project_id=action.project_id or "", content=action.text,
                    priority=1, added_at=self._now_iso())

    def create_task(self, request: CreateTaskRequest) -> MutationEnqueued:
        temp_id = new_pending_id()
        placeholder = self._placeholder_for_create(request, temp_id)
        action = CreateTaskAction(request=request, temp_id=temp_id)
        with self.db.transaction():
            self._upsert_task(placeholder)
            mutation_id = self._enqueue(action)
        logger.info(f"Queued create of '{request.content}' as {temp_id}")
        return MutationEnqueued(mutation_id, "create", temp_id, entity=placeholder)

    def quick_add(self, text: str, project_id: Optional[str] = None) -> MutationEnqueued:
        """
        Queues a quick-add. The server parses the text (dates, labels, project), so a
        placeholder is only shown when the target project is already known.
        """
        if not text or not text.strip():
            raise InvalidUpdateError("Quick add text cannot be empty.")
        action = QuickAddAction(text=text.strip(), temp_id=new_pending_id() if project_id else None,
                                project_id=project_id)
        placeholder = self._placeholder_for_quick_add(action) if action.temp_id else None
        with self.db.transaction():
            if placeholder is not None:
                self._upsert_task(placeholder)
            mutation_id = self._enqueue(action)
        return MutationEnqueued(mutation_id, "quick_add", action.temp_id or "", entity=placeholder)

    def update_task(self, task_id: str, update: TaskUpdate) -> MutationEnqueued:
        self._guard(task_id)
        if update.is_empty():
            raise InvalidUpdateError("Update does not change any field.")
        current = self._require_cached(task_id)
        updated = update.apply_to(current)
        with self.db.transaction():
            self._upsert_task(updated)
            mutation_id = self._enqueue(UpdateTaskAction(task_id=task_id, update=update), Snapshot.capture(current))
        logger.info(f"Queued update of task {task_id}: {update.changed_fields()}")
        return MutationEnqueued(mutation_id, "update", task_id, entity=updated)

    def _archive(self, task: Task) -> None:
        completed_at = self._now_iso()
        completed = task.model_copy(update={"checked": True, "completed_at": completed_at})
        self.db.save_completed_task(completed.model_dump(), completed_at)
        self.db.delete_entity(ENTITY_TASK, task.id)

    def _unarchive(self, task: Task) -> Task:
        reopened = task.model_copy(update={"checked": False, "completed_at": None})
        self._upsert_task(reopened)
        self.db.delete_completed_task(task.id)
        return reopened

    def close_task(self, task_id: str) -> MutationEnqueued:
        self._guard(task_id)
        current = self._require_cached(task_id)
        with self.db.transaction():
            self._archive(current)
            mutation_id = self._enqueue(CloseTaskAction(task_id=task_id), Snapshot.capture(current))
        logger.info(f"Queued close of task {task_id}")
        return MutationEnqueued(mutation_id, "close", task_id, entity=current)

    def reopen_task(self, task_id: str) -> MutationEnqueued:
        self._guard(task_id)
        archived = self.db.get_completed_task(task_id)
        if archived is None:
            raise TaskNotCachedError(f"Task '{task_id}' is not in the completed task archive.")
        completed = Task(**archived)
        with self.db.transaction():
            reopened = self._unarchive(completed)
            mutation_id = self._enqueue(ReopenTaskAction(task_id=task_id), Snapshot.capture(completed))
        logger.info(f"Queued reopen of task {task_id}")
        return MutationEnqueued(mutation_id, "reopen", task_id, entity=reopened)

    def delete_task(self, task_id: str) -> MutationEnqueued:
        self._guard(task_id)
        current = self._require_cached(task_id)
        with self.db.transaction():
            self.db.delete_entity(ENTITY_TASK, task_id)
            mutation_id = self._enqueue(DeleteTaskAction(task_id=task_id), Snapshot.capture(current))
        logger.info(f"Queued delete of task {task_id}")
        return MutationEnqueued(mutation_id, "delete", task_id, entity=current)

    ###################################################################################################################
    # Local edit bookkeeping (rollback, re-apply)
    ###################################################################################################################

    def _with_outstanding_edits(self, task: Task, exclude_mutation_id: int) -> Optional[Task]:
        """
        `task` with every other queued edit for it layered on top, oldest first.
        Returns None when a queued close or delete means the task should stay out of the active set.
        """
        result = task
        for row in self.db.list_mutations():
            if row["id"] == exclude_mutation_id or row["entity_id"] != task.id:
                continue
            try:
                other = Mutation.from_row(row)
            except MutationDecodeError:
                continue
            if isinstance(other.action, UpdateTaskAction):
                result = other.action.update.apply_to(result)
            elif isinstance(other.action, (CloseTaskAction, DeleteTaskAction)):
                return None
        return result

    def _store_canonical(self, task: Task, mutation_id: int) -> None:
        visible = self._with_outstanding_edits(task, mutation_id)
        if visible is not None:
            self._upsert_task(visible)

    def _rollback(self, mutation: Mutation) -> bool:
        """Reverts the optimistic cache edit of `mutation`. Returns False if there was nothing to restore from."""
        action = mutation.action
        if isinstance(action, (CreateTaskAction, QuickAddAction)):
            if action.temp_id:
                self.db.delete_entity(ENTITY_TASK, action.temp_id)
            return True
        if mutation.snapshot is None:
            logger.warning(f"Mutation {mutation.id} has no snapshot; cache left as is.")
            return False
        before = mutation.snapshot.entity
        if isinstance(action, (CloseTaskAction, DeleteTaskAction, UpdateTaskAction)):
            self._store_canonical(before, mutation.id)
            if isinstance(action, CloseTaskAction):
                self.db.delete_completed_task(before.id)
            return True
        elif isinstance(action, ReopenTaskAction):
            self.db.delete_entity(ENTITY_TASK, before.id)
            self.db.save_completed_task(before.model_dump(), before.completed_at)
            return True
        raise TypeError(f"Unhandled mutation action {type(action).__name__}")

    def _reapply(self, mutation: Mutation) -> None:
        """Puts the optimistic edit of `mutation` back into the cache (used when retrying)."""
        action = mutation.action
        snapshot_task = mutation.snapshot.entity if mutation.snapshot else None
        if isinstance(action, CreateTaskAction):
            if self.get_cached_task(action.temp_id) is None:
                self._upsert_task(self._placeholder_for_create(action.request, action.temp_id))
        elif isinstance(action, QuickAddAction):
            if action.temp_id and self.get_cached_task(action.temp_id) is None:
                self._upsert_task(self._placeholder_for_quick_add(action))
        elif isinstance(action, UpdateTaskAction):
            base = self.get_cached_task(action.task_id) or snapshot_task
            if base is not None:
                self._upsert_task(action.update.apply_to(base))
        elif isinstance(action, CloseTaskAction):
            base = self.get_cached_task(action.task_id) or snapshot_task
            if base is not None:
                self._archive(base)
        elif isinstance(action, ReopenTaskAction):
            archived = self.db.get_completed_task(action.task_id)
            base = Task(**archived) if archived else snapshot_task
            if base is not None:
                self._unarchive(base)
        elif isinstance(action, DeleteTaskAction):
            self.db.delete_entity(ENTITY_TASK, action.task_id)
        else:
            raise TypeError(f"Unhandled mutation action {type(action).__name__}")

    ###################################################################################################################
    # Flush
    ###################################################################################################################

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    async def flush_next(self) -> Optional[Message]:
        """
        Delivers the oldest pending mutation and returns the outcome message, or None if the
        queue is empty or another flush is already running.
        """
        if self._flush_lock.locked():
            logger.debug("Flush already in progress; skipping.")
            return None
        async with self._flush_lock:
            row = self.db.claim_next_pending_mutation()
            if row is None:
                return None
            try:
                mutation = Mutation.from_row(row)
            except MutationDecodeError as e:
                note = f"Unreadable mutation: {e}"
                logger.error(f"Mutation {row['id']} cannot be decoded: {e}")
                self.db.update_mutation_status(row["id"], MutationStatus.CONFLICTED.value, note)
                return MutationConflicted(row["id"], row.get("action", ""), row.get("entity_id", ""), note)
            logger.debug(f"Flushing mutation {mutation.id} ({mutation.action_name} {mutation.entity_id}), "
                         f"attempt {mutation.attempts}")
            try:
                return await self._dispatch(mutation)
            except BaseException:
                self._release_claim(mutation.id)
                raise

    def _release_claim(self, mutation_id: int) -> None:
        """
        Puts a mutation that is still `flushing` back to `pending` after an unexpected error or
        cancellation, so the claim does not block every later flush. The idempotency key makes
        the resend safe if the server already applied it.
        """
        try:
            row = self.db.get_mutation(mutation_id)
            if row is not None and row["status"] == MutationStatus.FLUSHING.value:
                self.db.update_mutation_status(mutation_id, MutationStatus.PENDING.value, "Interrupted flush")
                logger.warning(f"Mutation {mutation_id} returned to the queue after an interrupted flush.")
        except TaskCacheDBError as e:
            logger.error(f"Could not release mutation {mutation_id}; it stays flushing until recovery: {e}")

    async def flush_pending(self, max_items: Optional[int] = None) -> List[Message]:
        """Flushes one mutation at a time until the queue is drained or a transient failure stops it."""
        results: List[Message] = []
        while max_items is None or len(results) < max_items:
            message = await self.flush_next()
            if message is None:
                break
            results.append(message)
            if isinstance(message, MutationRequeued):
                break
        return results

    async def _dispatch(self, mutation: Mutation) -> Message:
        action = mutation.action
        if isinstance(action, UpdateTaskAction):
            return await self._flush_update(mutation, action)
        elif isinstance(action, CreateTaskAction):
            return await self._flush_create(mutation, action)
        elif isinstance(action, QuickAddAction):
            return await self._flush_quick_add(mutation, action)
        elif isinstance(action, CloseTaskAction):
            return await self._flush_simple(mutation, self.client.close_task)
        elif isinstance(action, ReopenTaskAction):
            return await self._flush_simple(mutation, self.client.reopen_task)
        elif isinstance(action, DeleteTaskAction):
            return await self._flush_simple(mutation, self.client.delete_task)
        raise TypeError(f"Unhandled mutation action {type(action).__name__}")

    def _mark_conflicted(self, mutation: Mutation, note: str, rolled_back: bool = False) -> MutationConflicted:
        self.db.update_mutation_status(mutation.id, MutationStatus.CONFLICTED.value, note)
        logger.warning(f"Mutation {mutation.id} ({mutation.action_name} {mutation.entity_id}) conflicted: {note}")
        return MutationConflicted(mutation.id, mutation.action_name, mutation.entity_id, note, rolled_back=rolled_back)

    def _handle_failure(self, mutation: Mutation, error: BaseException, not_found: str) -> Message:
        kind = classify_failure(error)
        if kind is FailureKind.NOT_FOUND and not_found == _NOT_FOUND_SUCCESS:
            self.db.delete_mutation(mutation.id)
            logger.info(f"Mutation {mutation.id}: {mutation.entity_id} already gone on server; treating as done.")
            return MutationFlushed(mutation.id, mutation.action_name, mutation.entity_id,
                                   note="already applied on server")
        if kind is FailureKind.NOT_FOUND and not_found == _NOT_FOUND_CONFLICT:
            return self._mark_conflicted(mutation, TASK_DELETED_ON_SERVER)
        if kind is FailureKind.TRANSIENT:
            self.db.update_mutation_status(mutation.id, MutationStatus.PENDING.value, f"Retrying: {error}")
            logger.info(f"Mutation {mutation.id} requeued after transient error: {error}")
            return MutationRequeued(mutation.id, mutation.action_name, mutation.entity_id, str(error))

        with self.db.transaction():
            rolled_back = self._rollback(mutation)
            message = self._mark_conflicted(mutation, f"API error: {error}", rolled_back=rolled_back)
        return message

    async def _flush_update(self, mutation: Mutation, action: UpdateTaskAction) -> Message:
        try:
            server_task = await self.client.get_task(action.task_id)
        except REMOTE_ERRORS as e:
            return self._handle_failure(mutation, e, not_found=_NOT_FOUND_CONFLICT)

        if not mutation.force:
            if mutation.snapshot is None:
                return self._mark_conflicted(mutation, "missing snapshot; cannot check for remote changes")
            conflict = detect_conflict(mutation.snapshot.entity, server_task, action.update)
            if conflict:
                return self._mark_conflicted(mutation, conflict)

        try:
            updated = await self.client.update_task(action.task_id, action.update.to_payload(),
                                                    request_id=mutation.idempotency_key)
        except REMOTE_ERRORS as e:
            return self._handle_failure(mutation, e, not_found=_NOT_FOUND_CONFLICT)

        with self.db.transaction():
            self._store_canonical(updated, mutation.id)
            self.db.delete_mutation(mutation.id)
        return MutationFlushed(mutation.id, "update", updated.id, entity=updated)

    def _resolve_created(self, mutation: Mutation, temp_id: Optional[str], created: Task) -> MutationFlushed:
        with self.db.transaction():
            if temp_id:
                self.db.delete_entity(ENTITY_TASK, temp_id)
            self._upsert_task(created)
            self.db.delete_mutation(mutation.id)
        logger.info(f"Mutation {mutation.id}: {temp_id or 'quick add'} resolved to task {created.id}")
        return MutationFlushed(mutation.id, mutation.action_name, created.id, entity=created, temp_id=temp_id)

    async def _flush_create(self, mutation: Mutation, action: CreateTaskAction) -> Message:
        try:
            created = await self.client.create_task(action.request, request_id=mutation.idempotency_key)
        except REMOTE_ERRORS as e:
            return self._handle_failure(mutation, e, not_found=_NOT_FOUND_PERMANENT)
        return self._resolve_created(mutation, action.temp_id, created)

    async def _flush_quick_add(self, mutation: Mutation, action: QuickAddAction) -> Message:
        try:
            created = await self.client.quick_add(QuickAddRequest(text=action.text),
                                                  request_id=mutation.idempotency_key)
        except REMOTE_ERRORS as e:
            return self._handle_failure(mutation, e, not_found=_NOT_FOUND_PERMANENT)
        return self._resolve_created(mutation, action.temp_id, created)

    async def _flush_simple(self, mutation: Mutation, call) -> Message:
        """Close, reopen and delete: the cache already shows the result, so success only clears the queue."""
        try:
            await call(mutation.entity_id, request_id=mutation.idempotency_key)
        except REMOTE_ERRORS as e:
            return self._handle_failure(mutation, e, not_found=_NOT_FOUND_SUCCESS)
        self.db.delete_mutation(mutation.id)
        return MutationFlushed(mutation.id, mutation.action_name, mutation.entity_id)

    # --- Batched flush ---
    @staticmethod
    def _command_for(mutation: Mutation) -> BatchCommand:
        action = mutation.action
        key = mutation.idempotency_key
        if isinstance(action, CreateTaskAction):
            return BatchCommand(type="item_add", uuid=key, temp_id=action.temp_id,
                                args=action.request.model_dump(exclude_none=True))
        elif isinstance(action, QuickAddAction):
            args = {"text": action.text}
            return BatchCommand(type="item_quick_add", uuid=key, temp_id=action.temp_id, args=args)
        elif isinstance(action, UpdateTaskAction):
            return BatchCommand(type="item_update", uuid=key,
                                args={"id": action.task_id, **update_wire_body(action.update.to_payload())})
        elif isinstance(action, CloseTaskAction):
            return BatchCommand(type="item_close", uuid=key, args={"id": action.task_id})
        elif isinstance(action, ReopenTaskAction):
            return BatchCommand(type="item_reopen", uuid=key, args={"id": action.task_id})
        elif isinstance(action, DeleteTaskAction):
            return BatchCommand(type="item_delete", uuid=key, args={"id": action.task_id})
        raise TypeError(f"Unhandled mutation action {type(action).__name__}")

    @staticmethod
    def _not_found_policy(mutation: Mutation) -> str:
        if isinstance(mutation.action, UpdateTaskAction):
            return _NOT_FOUND_CONFLICT
        if isinstance(mutation.action, (CreateTaskAction, QuickAddAction)):
            return _NOT_FOUND_PERMANENT
        return _NOT_FOUND_SUCCESS

    def _batch_size(self, limit: int) -> int:
        """
        How many of the oldest pending mutations can go out together. A batch ends before an
        update that needs a conflict check on a task an earlier command in the batch already
        touches, so that update is checked against the server after those commands land.
        """
        touched: Set[str] = set()
        size = 0
        for row in self.db.list_mutations(MutationStatus.PENDING.value)[:limit]:
            entity_id = row.get("entity_id") or ""
            if row.get("action") == "update" and not row.get("force") and entity_id in touched:
                break
            if entity_id:
                touched.add(entity_id)
            size += 1
        return size

    async def flush_batch(self, limit: int = 20) -> List[Message]:
        """
        Delivers up to `limit` pending mutations in one batched request. Each command carries
        its mutation's idempotency key, so a batch resent after a lost response is applied once.
        Results are applied per mutation with the same rules as `flush_next` and returned in
        queue order.
        """
        if limit < 1:
            raise ValueError("Batch limit must be at least 1.")
        if self._flush_lock.locked():
            logger.debug("Flush already in progress; skipping batch.")
            return []
        async with self._flush_lock:
            size = self._batch_size(limit)
            rows = self.db.claim_pending_batch(size) if size else []
            if not rows:
                return []
            self._in_flight_batch = {row["id"] for row in rows}
            try:
                messages = await self._flush_claimed_batch(rows)
            finally:
                self._in_flight_batch = set()
            return sorted(messages, key=lambda m: m.mutation_id)

    async def _flush_claimed_batch(self, rows: List[Dict[str, Any]]) -> List[Message]:
        messages: List[Message] = []
        mutations: List[Mutation] = []
        for row in rows:
            try:
                mutations.append(Mutation.from_row(row))
            except MutationDecodeError as e:
                note = f"Unreadable mutation: {e}"
                self.db.update_mutation_status(row["id"], MutationStatus.CONFLICTED.value, note)
                messages.append(MutationConflicted(row["id"], row.get("action", ""), row.get("entity_id", ""), note))

        ready = await self._conflict_check_batch(mutations, messages)
        if not ready:
            return messages

        try:
            response = await self.client.submit_commands([self._command_for(m) for m in ready])
        except REMOTE_ERRORS as e:
            for mutation in ready:
                messages.append(self._handle_failure(mutation, e, not_found=self._not_found_policy(mutation)))
            return messages

        if response.sync_token:
            self.db.set_sync_cursor("tasks", "", response.sync_token)
        for mutation in ready:
            messages.append(self._apply_batch_result(mutation, response))
        return messages

    async def _conflict_check_batch(self, mutations: List[Mutation], messages: List[Message]) -> List[Mutation]:
        to_check = [m for m in mutations if isinstance(m.action, UpdateTaskAction) and not m.force]
        server_states = await asyncio.gather(*(self.client.get_task(m.entity_id) for m in to_check),
                                             return_exceptions=True)
        checked = {m.id: state for m, state in zip(to_check, server_states)}

        ready = []
        for mutation in mutations:
            if mutation.id not in checked:
                ready.append(mutation)
                continue
            state = checked[mutation.id]
            if isinstance(state, BaseException):
                if not isinstance(state, REMOTE_ERRORS):
                    raise state
                messages.append(self._handle_failure(mutation, state, not_found=_NOT_FOUND_CONFLICT))
                continue
            if mutation.snapshot is None:
                messages.append(self._mark_conflicted(mutation, "missing snapshot; cannot check for remote changes"))
                continue
            conflict = detect_conflict(mutation.snapshot.entity, state, mutation.action.update)
            if conflict:
                messages.append(self._mark_conflicted(mutation, conflict))
                continue
            ready.append(mutation)
        return ready

    def _apply_batch_result(self, mutation: Mutation, response: BatchResponse) -> Message:
        status = response.sync_status.get(mutation.idempotency_key)
        if status is None:
            self.db.update_mutation_status(mutation.id, MutationStatus.PENDING.value, "Not processed by server")
            return MutationRequeued(mutation.id, mutation.action_name, mutation.entity_id, "not processed by server")
        if status != "ok":
            error = status if isinstance(status, dict) else {"error": str(status)}
            exc = exception_for_status(int(error.get("http_code", 400)), str(error.get("error", "command failed")),
                                       error)
            return self._handle_failure(mutation, exc, not_found=self._not_found_policy(mutation))

        items_by_id = {str(item["id"]): item for item in response.items if isinstance(item, dict) and "id" in item}
        action = mutation.action
        if isinstance(action, (CreateTaskAction, QuickAddAction)):
            real_id = response.temp_id_mapping.get(action.temp_id) if action.temp_id else None
            created = self._created_from_batch(action, real_id, items_by_id)
            if created is None:
                # Without a mapping the new task arrives with the next refresh.
                with self.db.transaction():
                    if action.temp_id:
                        self.db.delete_entity(ENTITY_TASK, action.temp_id)
                    self.db.delete_mutation(mutation.id)
                return MutationFlushed(mutation.id, mutation.action_name, real_id or "", temp_id=action.temp_id)
            return self._resolve_created(mutation, action.temp_id, created)
        if isinstance(action, UpdateTaskAction):
            returned = items_by_id.get(action.task_id)
            with self.db.transaction():
                if returned is not None:
                    self._store_canonical(Task(**returned), mutation.id)
                self.db.delete_mutation(mutation.id)
            return MutationFlushed(mutation.id, "update", action.task_id,
                                   entity=Task(**returned) if returned is not None else None)
        self.db.delete_mutation(mutation.id)
        return MutationFlushed(mutation.id, mutation.action_name, mutation.entity_id)

    def _created_from_batch(self, action, real_id: Optional[str], items_by_id: Dict[str, Dict]) -> Optional[Task]:
        if not real_id:
            return None
        if real_id in items_by_id:
            return Task(**items_by_id[real_id])
        placeholder = self.get_cached_task(action.temp_id) if action.temp_id else None
        if placeholder is None:
            return None
        return placeholder.model_copy(update={"id": real_id})

    ###################################################################################################################
    # Queue management
    ###################################################################################################################

    def list_mutations(self, status: Optional[str] = None) -> List[Mutation]:
        mutations = []
        for row in self.db.list_mutations(status):
            try:
                mutations.append(Mutation.from_row(row))
            except MutationDecodeError as e:
                logger.warning(f"Skipping undecodable mutation {row.get('id')}: {e}")
        return mutations

    def get_mutation(self, mutation_id: int) -> Mutation:
        row = self.db.get_mutation(mutation_id)
        if row is None:
            raise MutationNotFoundError(f"Mutation {mutation_id} not found.")
        return Mutation.from_row(row)

    def _is_in_flight(self, mutation: Mutation) -> bool:
        return mutation.status is MutationStatus.FLUSHING or mutation.id in self._in_flight_batch

    def _require_idle(self, mutation: Mutation) -> None:
        if self._is_in_flight(mutation):
            raise MutationBusyError(f"Mutation {mutation.id} is being flushed.")

    def retry_mutation(self, mutation_id: int, *, force: bool = False) -> MutationEnqueued:
        """
        Puts a conflicted mutation back in the queue and re-applies its optimistic edit.
        With `force=True` an update skips the conflict check and overwrites the server values.
        """
        mutation = self.get_mutation(mutation_id)
        self._require_idle(mutation)
        if mutation.entity_id and not isinstance(mutation.action, (CreateTaskAction, QuickAddAction)):
            self._guard(mutation.entity_id)
        with self.db.transaction():
            if mutation.status is MutationStatus.CONFLICTED:
                self._reapply(mutation)
            self.db.set_mutation_force(mutation.id, force)
            self.db.update_mutation_status(mutation.id, MutationStatus.PENDING.value, "")
        logger.info(f"Mutation {mutation_id} requeued by user (force={force})")
        return MutationEnqueued(mutation.id, mutation.action_name, mutation.entity_id)

    def dismiss_mutation(self, mutation_id: int) -> bool:
        """Drops a mutation and reverts its optimistic edit from the snapshot."""
        mutation = self.get_mutation(mutation_id)
        self._require_idle(mutation)
        with self.db.transaction():
            self._rollback(mutation)
            deleted = self.db.delete_mutation(mutation.id)
        logger.info(f"Mutation {mutation_id} ({mutation.action_name} {mutation.entity_id}) dismissed")
        return deleted

    def dismiss_conflicted(self) -> int:
        return sum(1 for m in self.list_mutations(MutationStatus.CONFLICTED.value) if self.dismiss_mutation(m.id))

    def dismiss_all(self) -> int:
        """Dismisses every mutation that is not currently in flight, newest first."""
        dismissed = 0
        for mutation in reversed(self.list_mutations()):
            if self._is_in_flight(mutation):
                continue
            if self.dismiss_mutation(mutation.id):
                dismissed += 1
        return dismissed

    def pending_count(self) -> int:
        return self.db.pending_mutation_count()

    def conflict_count(self) -> int:
        return self.db.conflicted_mutation_count()

    def mutation_status_map(self) -> Dict[str, str]:
        return self.db.mutation_status_by_entity(ENTITY_TASK)

    def recover_interrupted_flushes(self) -> int:
        return self.db.reset_flushing_mutations()

#
# End of repository.py
#######################################################################################################################
