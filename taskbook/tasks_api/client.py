# taskbook/tasks_api/client.py
#
#
# Imports
import json
from typing import Optional, Dict, Any, List, Tuple
#
# 3rd-party Libraries
import httpx
from loguru import logger
#
# Local Imports
from .schemas import (
    Task, Project, Section, Label, PaginatedResponse, DirectoryUser,
    CreateTaskRequest, QuickAddRequest, CreateProjectRequest, BatchCommand, BatchResponse,
)
from .exceptions import (
    TasksAPIError, APIConnectionError, APIRequestError, APIResponseError, AuthenticationError,
    NotFoundError, RateLimitedError, ServerError,
)
#
########################################################################################################################
#
# Functions:

DEFAULT_BASE_URL = "https://api.todoist.com/api/v1"
PAGE_LIMIT = 200
DIRECTORY_PAGE_LIMIT = 100

# How a cleared field is spelled on the wire. Fields not listed are sent as JSON null.
_CLEARED_FIELD_WIRE_VALUES = {
    "due_string": "no date",
    "description": "",
    "labels": [],
}


def _error_detail(response: httpx.Response) -> Tuple[str, Optional[Dict[str, Any]]]:
    detail = response.text or response.reason_phrase
    response_data = None
    try:
        response_data = response.json()
    except ValueError:
        return detail, None
    if isinstance(response_data, dict):
        for key in ("error", "detail", "message"):
            if isinstance(response_data.get(key), str):
                detail = response_data[key]
                break
    return detail, response_data if isinstance(response_data, dict) else {"raw": response_data}


def exception_for_status(status_code: int, detail: str, response_data: Optional[Dict[str, Any]] = None,
                         retry_after: Optional[float] = None) -> TasksAPIError:
    """Maps an HTTP status to the client's exception taxonomy. Also used to decode per-command batch results."""
    if status_code == 401:
        return AuthenticationError(f"Authentication failed: {detail}")
    if status_code in (400, 422):
        return APIRequestError(f"Validation Error: {detail}", response_data=response_data)
    if status_code == 404:
        return NotFoundError(status_code, detail, response_data=response_data)
    if status_code == 429:
        return RateLimitedError(status_code, detail, response_data=response_data, retry_after=retry_after)
    if status_code >= 500:
        return ServerError(status_code, detail, response_data=response_data)
    return APIResponseError(status_code, detail, response_data=response_data)


def update_wire_body(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Spells cleared fields (None) the way the API expects them."""
    return {key: (_CLEARED_FIELD_WIRE_VALUES.get(key) if value is None else value) for key, value in changes.items()}


class TasksAPIClient:
    def __init__(self, base_url: str = DEFAULT_BASE_URL, token: Optional[str] = None, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> Any:
        client = await self._get_client()
        headers = {"X-Request-Id": request_id} if request_id else None
        try:
            response = await client.request(method, endpoint, json=json_data, data=data, params=params, headers=headers)
        except httpx.RequestError as e:  # ConnectError, TimeoutException, ...
            raise APIConnectionError(f"Connection error to {self.base_url}{endpoint}: {e}") from e

        if response.is_error:
            detail, response_data = _error_detail(response)
            retry_after = None
            if response.status_code == 429:
                try:
                    retry_after = float(response.headers.get("Retry-After", ""))
                except ValueError:
                    retry_after = None
            logger.debug(f"{method} {endpoint} failed with {response.status_code}: {detail}")
            raise exception_for_status(response.status_code, detail, response_data, retry_after)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            raise APIResponseError(response.status_code, "Failed to decode JSON response",
                                   response_data={"raw_text": response.text})

    async def _request_object(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Like `_request`, for endpoints that must answer with a JSON object."""
        result = await self._request(method, endpoint, **kwargs)
        if not isinstance(result, dict):
            raise APIResponseError(200, f"Expected a JSON object from {endpoint}, got {type(result).__name__}",
                                   response_data={"raw": result})
        return result

    async def _get_paginated(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        query = dict(params or {})
        query["limit"] = PAGE_LIMIT
        while True:
            page = PaginatedResponse(**(await self._request("GET", endpoint, params=query) or {}))
            results.extend(page.results)
            if not page.next_cursor:
                return results
            query["cursor"] = page.next_cursor

    # --- Reads ---
    async def get_projects(self) -> List[Project]:
        return [Project(**p) for p in await self._get_paginated("/projects")]

    async def get_labels(self) -> List[Label]:
        return [Label(**lbl) for lbl in await self._get_paginated("/labels")]

    async def get_tasks(self, project_id: Optional[str] = None) -> List[Task]:
        params = {"project_id": project_id} if project_id else None
        return [Task(**t) for t in await self._get_paginated("/tasks", params)]

    async def get_sections(self, project_id: str) -> List[Section]:
        return [Section(**s) for s in await self._get_paginated("/sections", {"project_id": project_id})]

    async def get_task(self, task_id: str) -> Task:
        return Task(**await self._request_object("GET", f"/tasks/{task_id}"))

    # --- Writes ---
    async def create_task(self, request_data: CreateTaskRequest, request_id: Optional[str] = None) -> Task:
        body = request_data.model_dump(exclude_none=True)
        return Task(**await self._request_object("POST", "/tasks", json_data=body, request_id=request_id))

    async def quick_add(self, request_data: QuickAddRequest, request_id: Optional[str] = None) -> Task:
        body = request_data.model_dump()
        return Task(**await self._request_object("POST", "/tasks/quick", json_data=body, request_id=request_id))

    async def update_task(self, task_id: str, changes: Dict[str, Any], request_id: Optional[str] = None) -> Task:
        """
        Sends a partial update. `changes` holds only the fields being changed; a value of
        None means "clear this field".
        """
        body = update_wire_body(changes)
        return Task(**await self._request_object("POST", f"/tasks/{task_id}", json_data=body, request_id=request_id))

    async def close_task(self, task_id: str, request_id: Optional[str] = None) -> None:
        await self._request("POST", f"/tasks/{task_id}/close", request_id=request_id)

    async def reopen_task(self, task_id: str, request_id: Optional[str] = None) -> None:
        await self._request("POST", f"/tasks/{task_id}/reopen", request_id=request_id)

    async def delete_task(self, task_id: str, request_id: Optional[str] = None) -> None:
        await self._request("DELETE", f"/tasks/{task_id}", request_id=request_id)

    async def submit_commands(self, commands: List[BatchCommand]) -> BatchResponse:
        """Posts a list of commands to the batched /sync endpoint (form-encoded, as the API expects)."""
        payload = json.dumps([c.model_dump(exclude_none=True) for c in commands])
        response_dict = await self._request("POST", "/sync", data={"commands": payload})
        return BatchResponse(**(response_dict or {}))

    # --- Projects ---
    async def create_project(self, request_data: CreateProjectRequest) -> Project:
        return Project(**await self._request_object("POST", "/projects", json_data=request_data.model_dump()))

    async def archive_project(self, project_id: str) -> None:
        await self._request("POST", f"/projects/{project_id}/archive")

    async def unarchive_project(self, project_id: str) -> None:
        await self._request("POST", f"/projects/{project_id}/unarchive")

    # --- User directory ---
    async def get_current_user(self) -> Optional[DirectoryUser]:
        return DirectoryUser.from_row(await self._request_object("GET", "/user"))

    async def get_workspace_users(self) -> List[DirectoryUser]:
        """All users of the token's workspaces. Pages until `has_more` is false."""
        users: Dict[str, DirectoryUser] = {}
        query: Dict[str, Any] = {"limit": DIRECTORY_PAGE_LIMIT}
        while True:
            page = await self._request_object("GET", "/workspaces/users", params=query)
            for row in page.get("workspace_users") or []:
                user = DirectoryUser.from_row(row) if isinstance(row, dict) else None
                if user is not None:
                    users[user.id] = user
            next_cursor = page.get("next_cursor")
            if not page.get("has_more") or not next_cursor:
                return list(users.values())
            query["cursor"] = next_cursor

    async def get_project_collaborators(self, project_id: str) -> List[DirectoryUser]:
        data = await self._request("GET", f"/projects/{project_id}/collaborators")
        if isinstance(data, dict):
            rows = data.get("results", data.get("collaborators")) or []
        else:
            rows = data or []
        users: Dict[str, DirectoryUser] = {}
        for row in rows:
            user = DirectoryUser.from_row(row) if isinstance(row, dict) else None
            if user is not None:
                users[user.id] = user
        return list(users.values())

#
# End of taskbook/tasks_api/client.py
########################################################################################################################
