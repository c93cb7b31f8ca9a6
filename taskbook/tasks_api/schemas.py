# taskbook/tasks_api/schemas.py
from typing import List, Optional, Dict, Any, Literal, Union
from pydantic import BaseModel, Field

# Enum-like Literals from the API
CommandType = Literal['item_add', 'item_update', 'item_close', 'item_reopen', 'item_delete', 'item_quick_add']
Priority = Literal[1, 2, 3, 4]


# --- Entities ---
class Due(BaseModel):
    date: str = ""
    timezone: Optional[str] = None
    string: str = ""
    lang: str = "en"
    is_recurring: bool = False


class Deadline(BaseModel):
    date: str = ""
    lang: Optional[str] = None


class Task(BaseModel):
    id: str
    user_id: str = ""
    project_id: str = ""
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    assigned_by_uid: Optional[str] = None
    responsible_uid: Optional[str] = None
    content: str = ""
    description: str = ""
    priority: int = 1
    due: Optional[Due] = None
    deadline: Optional[Deadline] = None
    labels: List[str] = Field(default_factory=list)
    child_order: int = 0
    checked: bool = False
    is_deleted: bool = False
    added_at: Optional[str] = None
    completed_at: Optional[str] = None
    note_count: int = 0


class Project(BaseModel):
    id: str
    name: str = ""
    color: str = ""
    parent_id: Optional[str] = None
    child_order: int = 0
    is_favorite: bool = False
    is_archived: bool = False
    is_deleted: bool = False
    view_style: str = "list"
    inbox_project: bool = False
    description: str = ""


class Section(BaseModel):
    id: str
    project_id: str = ""
    name: str = ""
    section_order: int = 0
    is_archived: bool = False
    is_deleted: bool = False


class Label(BaseModel):
    id: str
    name: str = ""
    color: str = ""
    order: int = 0
    is_favorite: bool = False


class PaginatedResponse(BaseModel):
    results: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


# --- Requests ---
class CreateTaskRequest(BaseModel):
    content: str = Field(..., min_length=1)
    description: Optional[str] = None
    project_id: Optional[str] = None
    section_id: Optional[str] = None
    parent_id: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=4)
    due_string: Optional[str] = None
    deadline_date: Optional[str] = None
    labels: Optional[List[str]] = None


class QuickAddRequest(BaseModel):
    text: str = Field(..., min_length=1)


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1)


# --- User directory ---
class DirectoryUser(BaseModel):
    """A collaborator as shown next to assigned tasks. Directory endpoints spell the fields several ways."""
    id: str
    name: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Optional["DirectoryUser"]:
        user_id = _first_text(row, "user_id", "id", "uid")
        name = _first_text(row, "full_name", "name", "user_email", "email")
        if not user_id or not name:
            return None
        return cls(id=user_id, name=name)


def _first_text(row: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, float):
            value = int(value)
        text = str(value).strip()
        if text:
            return text
    return ""


# --- Batched commands ---
class BatchCommand(BaseModel):
    type: CommandType
    uuid: str  # idempotency key, reused on every resubmission
    args: Dict[str, Any] = Field(default_factory=dict)
    temp_id: Optional[str] = None


class BatchResponse(BaseModel):
    # Per command uuid: "ok", or an error object such as {"error_code": 22, "error": "Item not found", "http_code": 404}
    sync_status: Dict[str, Union[str, Dict[str, Any]]] = Field(default_factory=dict)
    temp_id_mapping: Dict[str, str] = Field(default_factory=dict)
    sync_token: Optional[str] = None
    # Full entities returned for created/updated items, keyed by real id.
    items: List[Dict[str, Any]] = Field(default_factory=list)
