# taskbook/tasks_api/exceptions.py
#
#
#######################################################################################################################
#
# Functions:

class TasksAPIError(Exception):
    """Base exception for tasks_api errors."""
    pass

class APIConnectionError(TasksAPIError):
    """Raised for network issues and timeouts."""
    pass

class APIRequestError(TasksAPIError):
    """Raised when the server rejects the request as malformed (400/422)."""
    def __init__(self, message: str, response_data: dict = None):
        super().__init__(message)
        self.response_data = response_data or {}

class APIResponseError(TasksAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    def __init__(self, status_code: int, message: str, response_data: dict = None):
        super().__init__(f"API Error {status_code}: {message}")
        self.status_code = status_code
        self.response_data = response_data or {}

class NotFoundError(APIResponseError):
    """The target entity does not exist (or no longer exists) on the server."""
    pass

class RateLimitedError(APIResponseError):
    """The server asked us to slow down (429)."""
    def __init__(self, status_code: int, message: str, response_data: dict = None, retry_after: float = None):
        super().__init__(status_code, message, response_data)
        self.retry_after = retry_after

class ServerError(APIResponseError):
    """5xx from the server."""
    pass

class AuthenticationError(TasksAPIError):
    """Raised for authentication failures (401)."""
    pass

#
# End of taskbook/tasks_api/exceptions.py
########################################################################################################################
