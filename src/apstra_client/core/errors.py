"""
Exception taxonomy for the Apstra client.

ApstraError
  ApstraHttpError          non-2xx / transport failure (status 0 = network)
    ApstraAuthError        401 at login, or 401 again after re-login
  ApstraNotFoundError      lookup by label/name found nothing
  ApstraProtocolError      server payload does not match the expected envelope
  ApstraTaskFailedError    async task completed, but not successfully
  TaskMonitorError         errors delivered to waiters by the task monitor
    TaskUnknownError
    TaskStatusUnexpectedError
    TaskDetailError
    TaskMonitorClosedError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .tasks import TaskRecord


class ApstraError(Exception):
    """Base class for everything raised by this package."""


@dataclass
class ApstraHttpError(ApstraError):
    """HTTP/transport error with context."""
    status: int
    method: str
    url: str
    body: str = ""
    message: str = ""

    def __str__(self) -> str:
        base = f"ApstraHttpError(status={self.status}, {self.method} {self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base


class ApstraAuthError(ApstraHttpError):
    """Authentication failed (bad credentials or token rejected after re-login)."""


class ApstraNotFoundError(ApstraError):
    """Raised when a lookup by label or name matches nothing."""


class ApstraProtocolError(ApstraError):
    """Raised when the server response does not have the expected shape."""


class ApstraTaskFailedError(ApstraError):
    """An asynchronous task finished in a non-success state."""

    def __init__(self, message: str, record: Optional["TaskRecord"] = None) -> None:
        super().__init__(message)
        self.record = record


class TaskMonitorError(ApstraError):
    """Base class for errors the task monitor hands to a waiting caller."""

    def __init__(self, message: str, blueprint_id: str = "", task_id: str = "") -> None:
        super().__init__(message)
        self.blueprint_id = blueprint_id
        self.task_id = task_id


class TaskUnknownError(TaskMonitorError):
    """The task id was missing from the server's task list."""


class TaskStatusUnexpectedError(TaskMonitorError):
    """The server reported a status outside the known vocabulary."""

    def __init__(self, message: str, blueprint_id: str = "", task_id: str = "", status: str = "") -> None:
        super().__init__(message, blueprint_id, task_id)
        self.status = status


class TaskDetailError(TaskMonitorError):
    """The task is finished but fetching its detailed record failed."""


class TaskMonitorClosedError(TaskMonitorError):
    """The task monitor is shut down and no longer accepts registrations."""
