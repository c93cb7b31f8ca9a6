# sync_errors.py
# Description: Errors raised by the sync layer and the classification of remote failures for the flush loop.
#
# Imports
from enum import Enum
#
# Third-Party Imports
from pydantic import ValidationError
#
# Local Imports
from taskbook.tasks_api.exceptions import (
    TasksAPIError, APIConnectionError, APIRequestError, APIResponseError,
    AuthenticationError, NotFoundError,
)
#
#######################################################################################################################
#
# Functions:

# Errors a remote call may raise that the flush loop turns into a queue decision.
REMOTE_ERRORS = (TasksAPIError, ValidationError)

TRANSIENT_STATUS_CODES = (408, 429)


class SyncError(Exception):
    """Base exception for the sync layer."""
    pass


class StillSyncingError(SyncError):
    """The target entity only exists locally; its create has not reached the server yet."""
    def __init__(self, entity_id: str):
        super().__init__("Task is still syncing, please wait")
        self.entity_id = entity_id


class TaskNotCachedError(SyncError):
    """An edit targets an entity that is not in the local cache, so no snapshot can be taken."""
    pass


class InvalidUpdateError(SyncError, ValueError):
    pass


class MutationNotFoundError(SyncError):
    pass


class MutationBusyError(SyncError):
    """The mutation is being flushed right now and cannot be retried or dismissed."""
    pass


class MutationDecodeError(SyncError):
    """A stored mutation could not be decoded back into a typed action."""
    pass


class SnapshotDecodeError(MutationDecodeError):
    pass


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_failure(error: BaseException) -> FailureKind:
    """
    Sorts a failed remote call into the three outcomes the flush loop knows about.

    - NotFound: the entity is already gone remotely.
    - Transient: network errors, timeouts, 408, 429, 5xx, and 401. A rejected token says
      nothing about the edit itself, so the mutation waits for working credentials.
    - Permanent: everything else (400/422 validation, 403, malformed responses).
    """
    if isinstance(error, NotFoundError):
        return FailureKind.NOT_FOUND
    if isinstance(error, (APIConnectionError, AuthenticationError)):
        return FailureKind.TRANSIENT
    if isinstance(error, APIResponseError):
        if error.status_code in TRANSIENT_STATUS_CODES or error.status_code >= 500:
            return FailureKind.TRANSIENT
        return FailureKind.PERMANENT
    if isinstance(error, APIRequestError):
        return FailureKind.PERMANENT
    return FailureKind.PERMANENT

#
# End of sync_errors.py
#######################################################################################################################
