# sync_events.py
# Description: Turns sync-layer result messages into notifications and queue counters on the app.
#
# Imports
import logging
from typing import TYPE_CHECKING
#
# 3rd-Party Imports
from textual.message import Message
#
# Local Imports
from ..DB.Task_Cache_DB import TaskCacheDBError
from ..Sync.messages import (
    AssigneeDirectoryLoaded, MutationConflicted, MutationEnqueued, MutationFlushed, MutationRequeued, ProjectArchived,
    ProjectCreated, ProjectUnarchived, ResourceLoaded, SyncCycleFinished,
)
if TYPE_CHECKING:
    from textual.app import App
#
########################################################################################################################
#
# Functions:

def refresh_queue_counters(app: 'App') -> None:
    """Copies pending/conflict counts and per-task sync status from the repository onto the app."""
    logger = getattr(app, 'loguru_logger', logging)
    repository = getattr(app, 'task_repository', None)
    if repository is None:
        return
    try:
        app.sync_pending_count = repository.pending_count()
        app.sync_conflict_count = repository.conflict_count()
        app.sync_status_by_task = repository.mutation_status_map()
    except TaskCacheDBError as e:
        logger.error(f"Could not read sync queue counters: {e}")


def handle_resource_loaded(app: 'App', message: ResourceLoaded) -> None:
    logger = getattr(app, 'loguru_logger', logging)
    if message.error:
        logger.warning(f"Refresh of {message.resource} '{message.scope_id}' failed: {message.error}")
        if message.items:
            app.notify(f"Showing cached {message.resource}; refresh failed.", title="Offline",
                       severity="warning", timeout=4)
        else:
            app.notify(f"Could not load {message.resource}: {message.error}", title="Sync",
                       severity="error", timeout=6)
        return
    logger.debug(f"{message.resource} '{message.scope_id}' loaded: {len(message.items)} item(s), "
                 f"from_cache={message.from_cache}, stale={message.stale}")


def handle_mutation_enqueued(app: 'App', message: MutationEnqueued) -> None:
    refresh_queue_counters(app)


def handle_mutation_flushed(app: 'App', message: MutationFlushed) -> None:
    logger = getattr(app, 'loguru_logger', logging)
    if message.temp_id:
        logger.info(f"Task {message.temp_id} is now {message.entity_id}")
    refresh_queue_counters(app)


def handle_mutation_conflicted(app: 'App', message: MutationConflicted) -> None:
    """Conflicts always reach the user; the mutation waits in the queue for retry or dismiss."""
    logger = getattr(app, 'loguru_logger', logging)
    logger.warning(f"Mutation {message.mutation_id} conflicted: {message.note}")
    detail = message.note
    if message.rolled_back:
        detail += " (your change was undone)"
    app.notify(f"Could not {message.action} task: {detail}", title="Sync conflict", severity="error", timeout=8)
    refresh_queue_counters(app)


def handle_mutation_requeued(app: 'App', message: MutationRequeued) -> None:
    logger = getattr(app, 'loguru_logger', logging)
    logger.info(f"Mutation {message.mutation_id} will retry: {message.error}")
    refresh_queue_counters(app)


def handle_sync_cycle_finished(app: 'App', message: SyncCycleFinished) -> None:
    refresh_queue_counters(app)
    if message.requeued:
        app.notify(f"{message.requeued} change(s) waiting for connection.", title="Sync",
                   severity="warning", timeout=4)
    elif message.flushed and not message.conflicted:
        app.notify(f"Synced {message.flushed} change(s).", title="Sync", severity="information", timeout=3)


def handle_project_changed(app: 'App', message: Message) -> None:
    """Create, archive and unarchive results. Failures are shown; successes only logged."""
    logger = getattr(app, 'loguru_logger', logging)
    action = {ProjectCreated: "create", ProjectArchived: "archive", ProjectUnarchived: "unarchive"}[type(message)]
    if message.error:
        logger.warning(f"Could not {action} project: {message.error}")
        app.notify(f"Could not {action} project: {message.error}", title="Projects", severity="error", timeout=6)
        return
    logger.info(f"Project {action} succeeded")


def handle_assignee_directory_loaded(app: 'App', message: AssigneeDirectoryLoaded) -> None:
    logger = getattr(app, 'loguru_logger', logging)
    if message.error:
        logger.warning(f"Collaborator names could not be loaded: {message.error}")
        return
    logger.debug(f"Collaborator directory: {message.updated} name(s) updated")


def handle_sync_message(app: 'App', message: Message) -> bool:
    """Routes any sync-layer message to its handler. Returns False for messages it does not know."""
    if isinstance(message, ResourceLoaded):
        handle_resource_loaded(app, message)
    elif isinstance(message, MutationEnqueued):
        handle_mutation_enqueued(app, message)
    elif isinstance(message, MutationFlushed):
        handle_mutation_flushed(app, message)
    elif isinstance(message, MutationConflicted):
        handle_mutation_conflicted(app, message)
    elif isinstance(message, MutationRequeued):
        handle_mutation_requeued(app, message)
    elif isinstance(message, SyncCycleFinished):
        handle_sync_cycle_finished(app, message)
    elif isinstance(message, (ProjectCreated, ProjectArchived, ProjectUnarchived)):
        handle_project_changed(app, message)
    elif isinstance(message, AssigneeDirectoryLoaded):
        handle_assignee_directory_loaded(app, message)
    else:
        return False
    return True

#
# End of sync_events.py
########################################################################################################################
