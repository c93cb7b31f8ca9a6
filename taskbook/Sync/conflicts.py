# conflicts.py
# Description: Three-way conflict check between the snapshot taken at edit time, the current server
#  state and the fields the user changed.
#
# Imports
import json
from typing import Any, Callable, List, Optional, Tuple
#
# Third-Party Imports
#
# Local Imports
from taskbook.tasks_api.schemas import Task
from taskbook.Sync.models import CLEAR, SetTo, TaskUpdate
#
#######################################################################################################################
#
# Functions:

CLEAR_MARKER = "<clear>"


def _quote(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _due_string(task: Task) -> str:
    return task.due.string if task.due else ""


def _deadline_date(task: Task) -> str:
    return task.deadline.date if task.deadline else ""


def _labels(task: Task) -> List[str]:
    return sorted(task.labels or [])


# update field -> (label used in messages, accessor on Task, formatter)
_COMPARED_FIELDS: Tuple[Tuple[str, str, Callable[[Task], Any], Callable[[Any], str]], ...] = (
    ("content", "content", lambda t: t.content, _quote),
    ("description", "description", lambda t: t.description or "", _quote),
    ("priority", "priority", lambda t: t.priority, str),
    ("due_string", "due", _due_string, _quote),
    ("deadline_date", "deadline", _deadline_date, _quote),
    ("labels", "labels", _labels, lambda labels: _quote(", ".join(labels))),
)


def _target(update_value, formatter: Callable[[Any], str], field_name: str) -> str:
    if update_value is CLEAR:
        return CLEAR_MARKER
    value = update_value.value
    if field_name == "labels":
        value = sorted(value)
    return formatter(value)


def detect_conflict(snapshot: Task, server: Task, update: TaskUpdate) -> Optional[str]:
    """
    Returns a description of every field the user changed that was also changed on the server
    since `snapshot` was taken, or None when the update can be applied safely.

    Only fields present in `update` are compared; remote changes to other fields are adopted
    silently. A field conflicts when snapshot and server disagree, whatever the user's new value.
    """
    conflicts: List[str] = []
    for field_name, label, accessor, formatter in _COMPARED_FIELDS:
        requested = getattr(update, field_name)
        if not isinstance(requested, SetTo) and requested is not CLEAR:
            continue
        before, now = accessor(snapshot), accessor(server)
        if before == now:
            continue
        conflicts.append(
            f"{label}: you changed {formatter(before)}→{_target(requested, formatter, field_name)}, "
            f"server has {formatter(now)}")
    return "; ".join(conflicts) if conflicts else None

#
# End of conflicts.py
#######################################################################################################################
