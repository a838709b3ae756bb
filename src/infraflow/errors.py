"""Error taxonomy for infrastructure reconciliation.

Remote API failures are mapped onto a small set of outcomes:
- 404 Not Found   -> absence of the resource (never raised to callers of get/delete)
- 304 Not Modified -> success
- everything else -> RemoteAPIError, fatal for the current run
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from googleapiclient.errors import HttpError


class InfraflowError(Exception):
    """Base class for all reconciliation errors."""

    pass


class MissingPrerequisiteError(InfraflowError):
    """Raised when a task's required whiteboard key is absent.

    This indicates a graph-construction defect (missing dependency edge),
    not a transient condition.
    """

    def __init__(self, key: str) -> None:
        super().__init__(f"could not locate required key: {key}")
        self.key = key


class RemoteAPIError(InfraflowError):
    """A remote API call failed with a status that maps to no standard outcome."""

    def __init__(self, status_code: int, message: str, reason: str | None = None) -> None:
        super().__init__(f"remote API error [status={status_code}]: {message}")
        self.status_code = status_code
        self.message = message
        self.reason = reason

    @property
    def is_not_found(self) -> bool:
        return self.status_code == HTTPStatus.NOT_FOUND

    @property
    def is_not_modified(self) -> bool:
        return self.status_code == HTTPStatus.NOT_MODIFIED


class OperationFailedError(InfraflowError):
    """An asynchronous remote operation reached DONE with errors."""

    def __init__(self, operation: str, messages: list[str]) -> None:
        super().__init__(f"operation {operation!r} failed with error(s): {', '.join(messages)}")
        self.operation = operation
        self.messages = messages


class InvalidUpdateError(InfraflowError):
    """An update was attempted on an immutable or unsupported field."""

    def __init__(self, *fields: str, detail: str | None = None) -> None:
        message = f"updating the following fields is not possible: {list(fields)}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.fields = list(fields)


class TaskTimeoutError(InfraflowError):
    """A task exceeded its allotted duration."""

    def __init__(self, task: str, timeout_seconds: float) -> None:
        super().__init__(f"task {task!r} timed out after {timeout_seconds:g}s")
        self.task = task
        self.timeout_seconds = timeout_seconds


class UserManagedResourceNotFoundError(InfraflowError):
    """A referenced externally-owned resource does not exist.

    Never auto-remediated: the engine does not create or delete
    user-managed resources.
    """

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"failed to locate user-managed {kind} [Name={name}]")
        self.kind = kind
        self.name = name


def from_http_error(err: HttpError) -> RemoteAPIError:
    """Convert a googleapiclient HttpError into a RemoteAPIError."""
    status = int(getattr(err.resp, "status", 0) or 0)
    reason: str | None = getattr(err, "reason", None)
    details: Any = getattr(err, "error_details", None)
    message = reason or str(details or err)
    return RemoteAPIError(status_code=status, message=message, reason=reason)
