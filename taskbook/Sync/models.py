# models.py
# Description: Typed building blocks of the mutation queue: placeholder ids, per-field update descriptors,
#  one action variant per kind of edit, versioned snapshots and the decoded Mutation record.
#
# Imports
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
#
# Third-Party Imports
from pydantic import ValidationError
#
# Local Imports
from taskbook.tasks_api.schemas import CreateTaskRequest, Deadline, Due, Task
from taskbook.Sync.sync_errors import InvalidUpdateError, MutationDecodeError, SnapshotDecodeError
#
#######################################################################################################################
#
# Functions:

PENDING_ID_PREFIX = "pending-"

ENTITY_TASK = "task"


def new_pending_id() -> str:
    return PENDING_ID_PREFIX + uuid.uuid4().hex


def is_pending_id(entity_id: Optional[str]) -> bool:
    return bool(entity_id) and entity_id.startswith(PENDING_ID_PREFIX)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds').replace('+00:00', 'Z')


class MutationStatus(str, Enum):
    PENDING = "pending"
    FLUSHING = "flushing"
    CONFLICTED = "conflicted"


# --- Per-field update descriptors ---
class _Unchanged:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNCHANGED"


class _Clear:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "CLEAR"


UNCHANGED = _Unchanged()
CLEAR = _Clear()


@dataclass(frozen=True)
class SetTo:
    value: Any


FieldUpdate = Union[_Unchanged, SetTo, _Clear]

# Fields that must always hold a value on a task.
_NOT_CLEARABLE = ("content", "priority")


@dataclass(frozen=True)
class TaskUpdate:
    """
    A partial update of a task. Every field is UNCHANGED, SetTo(value) or CLEAR, so
    "not provided" and "explicitly cleared" can never be confused.

    Serialized form: a missing key is UNCHANGED, null is CLEAR, anything else is SetTo.
    """
    content: FieldUpdate = UNCHANGED
    description: FieldUpdate = UNCHANGED
    priority: FieldUpdate = UNCHANGED
    due_string: FieldUpdate = UNCHANGED
    deadline_date: FieldUpdate = UNCHANGED
    labels: FieldUpdate = UNCHANGED

    FIELDS = ("content", "description", "priority", "due_string", "deadline_date", "labels")

    def __post_init__(self):
        for name in self.FIELDS:
            value = getattr(self, name)
            if not isinstance(value, (_Unchanged, SetTo, _Clear)):
                raise InvalidUpdateError(f"Field '{name}' must be UNCHANGED, SetTo(...) or CLEAR, got {value!r}")
            if value is CLEAR and name in _NOT_CLEARABLE:
                raise InvalidUpdateError(f"Field '{name}' cannot be cleared.")
        if isinstance(self.content, SetTo) and not str(self.content.value or "").strip():
            raise InvalidUpdateError("Task content cannot be empty.")
        if isinstance(self.priority, SetTo) and self.priority.value not in (1, 2, 3, 4):
            raise InvalidUpdateError(f"Priority must be 1-4, got {self.priority.value!r}")
        if isinstance(self.labels, SetTo) and not isinstance(self.labels.value, (list, tuple)):
            raise InvalidUpdateError("Labels must be a list of label names.")

    def changed_fields(self) -> List[str]:
        return [name for name in self.FIELDS if getattr(self, name) is not UNCHANGED]

    def is_empty(self) -> bool:
        return not self.changed_fields()

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for name in self.changed_fields():
            value = getattr(self, name)
            payload[name] = None if value is CLEAR else (list(value.value) if name == "labels" else value.value)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TaskUpdate":
        unknown = set(payload) - set(cls.FIELDS)
        if unknown:
            raise InvalidUpdateError(f"Unknown update fields: {sorted(unknown)}")
        kwargs = {name: (CLEAR if value is None else SetTo(value)) for name, value in payload.items()}
        return cls(**kwargs)

    def apply_to(self, task: Task) -> Task:
        """Returns a copy of `task` with this update applied."""
        changes: Dict[str, Any] = {}
        if isinstance(self.content, SetTo):
            changes["content"] = self.content.value
        if self.description is CLEAR:
            changes["description"] = ""
        elif isinstance(self.description, SetTo):
            changes["description"] = self.description.value
        if isinstance(self.priority, SetTo):
            changes["priority"] = self.priority.value
        if self.due_string is CLEAR:
            changes["due"] = None
        elif isinstance(self.due_string, SetTo):
            # The server resolves the natural-language string; keep the text until it does.
            changes["due"] = Due(string=self.due_string.value)
        if self.deadline_date is CLEAR:
            changes["deadline"] = None
        elif isinstance(self.deadline_date, SetTo):
            changes["deadline"] = Deadline(date=self.deadline_date.value)
        if self.labels is CLEAR:
            changes["labels"] = []
        elif isinstance(self.labels, SetTo):
            changes["labels"] = list(self.labels.value)
        return task.model_copy(update=changes, deep=True)


# --- Action variants (one per kind of queued edit) ---
@dataclass(frozen=True)
class CreateTaskAction:
    request: CreateTaskRequest
    temp_id: str


@dataclass(frozen=True)
class QuickAddAction:
    text: str
    temp_id: Optional[str] = None
    project_id: Optional[str] = None


@dataclass(frozen=True)
class UpdateTaskAction:
    task_id: str
    update: TaskUpdate


@dataclass(frozen=True)
class CloseTaskAction:
    task_id: str


@dataclass(frozen=True)
class ReopenTaskAction:
    task_id: str


@dataclass(frozen=True)
class DeleteTaskAction:
    task_id: str


MutationAction = Union[CreateTaskAction, QuickAddAction, UpdateTaskAction,
                       CloseTaskAction, ReopenTaskAction, DeleteTaskAction]

ACTION_NAMES = {
    CreateTaskAction: "create",
    QuickAddAction: "quick_add",
    UpdateTaskAction: "update",
    CloseTaskAction: "close",
    ReopenTaskAction: "reopen",
    DeleteTaskAction: "delete",
}


def encode_action(action: MutationAction) -> Tuple[str, str, Dict[str, Any]]:
    """Returns (action name, entity id, JSON-ready payload) for storage."""
    if isinstance(action, CreateTaskAction):
        return "create", action.temp_id, action.request.model_dump(exclude_none=True)
    elif isinstance(action, QuickAddAction):
        payload = {"text": action.text}
        if action.temp_id:
            payload["temp_id"] = action.temp_id
        if action.project_id:
            payload["project_id"] = action.project_id
        return "quick_add", action.temp_id or "", payload
    elif isinstance(action, UpdateTaskAction):
        return "update", action.task_id, action.update.to_payload()
    elif isinstance(action, (CloseTaskAction, ReopenTaskAction, DeleteTaskAction)):
        return ACTION_NAMES[type(action)], action.task_id, {}
    raise TypeError(f"Unknown mutation action type: {type(action).__name__}")


def decode_action(name: str, entity_id: str, payload: Dict[str, Any]) -> MutationAction:
    try:
        if name == "create":
            return CreateTaskAction(request=CreateTaskRequest(**payload), temp_id=entity_id)
        elif name == "quick_add":
            return QuickAddAction(text=payload["text"], temp_id=payload.get("temp_id") or None,
                                  project_id=payload.get("project_id") or None)
        elif name == "update":
            return UpdateTaskAction(task_id=entity_id, update=TaskUpdate.from_payload(payload))
        elif name == "close":
            return CloseTaskAction(task_id=entity_id)
        elif name == "reopen":
            return ReopenTaskAction(task_id=entity_id)
        elif name == "delete":
            return DeleteTaskAction(task_id=entity_id)
    except (KeyError, TypeError, ValidationError, InvalidUpdateError) as e:
        raise MutationDecodeError(f"Malformed '{name}' payload: {e}") from e
    raise MutationDecodeError(f"Unknown mutation action '{name}'")


# --- Snapshot ---
SNAPSHOT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Snapshot:
    """Entity state captured when the local edit was made; the base for conflict checks and rollback."""
    entity: Task
    captured_at: str
    entity_type: str = ENTITY_TASK
    schema_version: int = SNAPSHOT_SCHEMA_VERSION

    @classmethod
    def capture(cls, task: Task) -> "Snapshot":
        return cls(entity=task.model_copy(deep=True), captured_at=utc_now_iso())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "entity_type": self.entity_type,
            "captured_at": self.captured_at,
            "entity": self.entity.model_dump(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        if not isinstance(data, dict):
            raise SnapshotDecodeError(f"Snapshot must be an object, got {type(data).__name__}")
        version = data.get("schema_version")
        if version != SNAPSHOT_SCHEMA_VERSION:
            raise SnapshotDecodeError(f"Unsupported snapshot schema version {version!r}")
        entity_type = data.get("entity_type", ENTITY_TASK)
        if entity_type != ENTITY_TASK:
            raise SnapshotDecodeError(f"Unsupported snapshot entity type {entity_type!r}")
        try:
            entity = Task(**data["entity"])
        except (KeyError, TypeError, ValidationError) as e:
            raise SnapshotDecodeError(f"Snapshot entity is malformed: {e}") from e
        return cls(entity=entity, captured_at=data.get("captured_at", ""), entity_type=entity_type,
                   schema_version=version)


# --- Decoded queue record ---
@dataclass
class Mutation:
    id: int
    entity_type: str
    entity_id: str
    action: MutationAction
    status: MutationStatus
    idempotency_key: str
    created_at: str
    snapshot: Optional[Snapshot] = None
    note: str = ""
    attempts: int = 0
    force: bool = False

    @property
    def action_name(self) -> str:
        return ACTION_NAMES[type(self.action)]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Mutation":
        """Decodes a row from `TaskCacheDB` (payload and snapshot already parsed from JSON)."""
        snapshot_data = row.get("snapshot")
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as e:
                raise MutationDecodeError(f"Mutation {row.get('id')} payload is not JSON: {e}") from e
        try:
            status = MutationStatus(row["status"])
        except (KeyError, ValueError) as e:
            raise MutationDecodeError(f"Mutation {row.get('id')} has an invalid status: {e}") from e
        return cls(
            id=row["id"],
            entity_type=row.get("entity_type", ENTITY_TASK),
            entity_id=row.get("entity_id", ""),
            action=decode_action(row.get("action", ""), row.get("entity_id", ""), payload),
            status=status,
            idempotency_key=row["idempotency_key"],
            created_at=row.get("created_at", ""),
            snapshot=Snapshot.from_dict(snapshot_data) if snapshot_data is not None else None,
            note=row.get("note") or "",
            attempts=int(row.get("attempts") or 0),
            force=bool(row.get("force")),
        )

    def describe(self) -> str:
        """One-line summary for the sync queue view."""
        action = self.action
        name = self.snapshot.entity.content if self.snapshot else ""
        if isinstance(action, CreateTaskAction):
            return f"Create \"{action.request.content}\""
        elif isinstance(action, QuickAddAction):
            return f"Quick add \"{action.text}\""
        elif isinstance(action, UpdateTaskAction):
            changes = ", ".join(action.update.changed_fields())
            return f"Update \"{name or self.entity_id}\": {changes}"
        verb = self.action_name.capitalize()
        return f"{verb} \"{name}\"" if name else f"{verb} task {self.entity_id}"

#
# End of models.py
#######################################################################################################################
