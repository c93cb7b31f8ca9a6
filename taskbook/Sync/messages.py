# messages.py
# Description: Result messages delivered from the sync layer to the app. Background refreshes and flushes
#  report back through these instead of touching view state directly.
#
# Imports
from typing import List, Optional, Sequence, Union
#
# 3rd-Party Imports
from pydantic import BaseModel
from textual.message import Message
#
# Local Imports
from taskbook.tasks_api.schemas import Project, Task
#
########################################################################################################################
#
# Functions:

class ResourceLoaded(Message):
    """Cached or freshly fetched entities for one resource scope."""
    def __init__(self, resource: str, scope_id: str, items: Sequence[BaseModel], *, from_cache: bool,
                 stale: bool = False, last_synced: Optional[float] = None, error: Union[str, None] = None) -> None:
        super().__init__()
        self.resource = resource
        self.scope_id = scope_id
        self.items = list(items)
        self.from_cache = from_cache
        self.stale = stale
        self.last_synced = last_synced
        self.error = error


class MutationEnqueued(Message):
    """A local edit was applied to the cache and queued for delivery."""
    def __init__(self, mutation_id: int, action: str, entity_id: str, entity: Optional[Task] = None) -> None:
        super().__init__()
        self.mutation_id = mutation_id
        self.action = action
        self.entity_id = entity_id
        self.entity = entity


class MutationFlushed(Message):
    """
    A queued edit reached the server (or the server already had the result).
    For creates, `temp_id` is the placeholder that `entity_id` replaced.
    """
    def __init__(self, mutation_id: int, action: str, entity_id: str, entity: Optional[Task] = None,
                 temp_id: Optional[str] = None, note: str = "") -> None:
        super().__init__()
        self.mutation_id = mutation_id
        self.action = action
        self.entity_id = entity_id
        self.entity = entity
        self.temp_id = temp_id
        self.note = note


class MutationConflicted(Message):
    """A queued edit needs the user's attention. `rolled_back` is True when the cache was reverted."""
    def __init__(self, mutation_id: int, action: str, entity_id: str, note: str, rolled_back: bool = False) -> None:
        super().__init__()
        self.mutation_id = mutation_id
        self.action = action
        self.entity_id = entity_id
        self.note = note
        self.rolled_back = rolled_back


class MutationRequeued(Message):
    """Delivery failed for a temporary reason; the edit stays queued for the next sync."""
    def __init__(self, mutation_id: int, action: str, entity_id: str, error: str) -> None:
        super().__init__()
        self.mutation_id = mutation_id
        self.action = action
        self.entity_id = entity_id
        self.error = error


class SyncCycleFinished(Message):
    def __init__(self, refreshed: int, flushed: int, conflicted: int, requeued: int,
                 errors: Optional[List[str]] = None) -> None:
        super().__init__()
        self.refreshed = refreshed
        self.flushed = flushed
        self.conflicted = conflicted
        self.requeued = requeued
        self.errors = errors or []


class ProjectCreated(Message):
    def __init__(self, project: Optional[Project] = None, error: Optional[str] = None) -> None:
        super().__init__()
        self.project = project
        self.error = error


class ProjectArchived(Message):
    """`error` is set when the server refused; the project then stays in the active list."""
    def __init__(self, project_id: str, error: Optional[str] = None) -> None:
        super().__init__()
        self.project_id = project_id
        self.error = error


class ProjectUnarchived(Message):
    """`project` is None when the server succeeded but the project could not be listed afterwards."""
    def __init__(self, project_id: str, project: Optional[Project] = None, error: Optional[str] = None) -> None:
        super().__init__()
        self.project_id = project_id
        self.project = project
        self.error = error


class AssigneeDirectoryLoaded(Message):
    """Result of refreshing collaborator names. `error` is only set when nothing could be learned."""
    def __init__(self, updated: int, error: Optional[str] = None) -> None:
        super().__init__()
        self.updated = updated
        self.error = error

#
# End of messages.py
########################################################################################################################
