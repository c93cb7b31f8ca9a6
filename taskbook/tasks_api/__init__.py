# taskbook/tasks_api/__init__.py
from .client import TasksAPIClient, DEFAULT_BASE_URL
from .exceptions import (
    TasksAPIError, APIConnectionError, APIRequestError,
    APIResponseError, AuthenticationError, NotFoundError,
    RateLimitedError, ServerError
)
from .schemas import (
    Task, Due, Deadline, Project, Section, Label,
    CreateTaskRequest, QuickAddRequest, CreateProjectRequest, DirectoryUser, BatchCommand, BatchResponse,
    CommandType
)

__all__ = [
    "TasksAPIClient", "DEFAULT_BASE_URL",
    "TasksAPIError", "APIConnectionError", "APIRequestError",
    "APIResponseError", "AuthenticationError", "NotFoundError",
    "RateLimitedError", "ServerError",
    "Task", "Due", "Deadline", "Project", "Section", "Label",
    "CreateTaskRequest", "QuickAddRequest", "CreateProjectRequest", "DirectoryUser", "BatchCommand", "BatchResponse",
    "CommandType"
]
