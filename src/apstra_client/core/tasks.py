"""
Apstra task wire types and helpers.

Apstra answers some blueprint-scoped requests made with ``?async=full`` with
``{"task_id": "..."}`` instead of the real API response. The task can then be
followed at:

  GET /api/blueprints/<bp>/tasks/?filter=id in ['t1','t2']   -> {"items": [...]}
  GET /api/blueprints/<bp>/tasks/<task_id>                   -> full task record

Only the fields the client actually consumes are modelled; the complete
payload is kept in ``TaskRecord.raw``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Union

TASK_STATUS_INIT = "init"
TASK_STATUS_ONGOING = "in_progress"
TASK_STATUS_SUCCESS = "succeeded"
TASK_STATUS_FAIL = "failed"
TASK_STATUS_TIMEOUT = "timeout"

PENDING_STATUSES = frozenset({TASK_STATUS_INIT, TASK_STATUS_ONGOING})
TERMINAL_STATUSES = frozenset({TASK_STATUS_SUCCESS, TASK_STATUS_FAIL, TASK_STATUS_TIMEOUT})


@dataclass
class DetailedStatus:
    api_response: Any = None
    config_blueprint_version: int = 0
    errors: Any = None
    error_code: int = 0

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> "DetailedStatus":
        data = data or {}
        return cls(
            api_response=data.get("api_response"),
            config_blueprint_version=int(data.get("config_blueprint_version") or 0),
            errors=data.get("errors"),
            error_code=int(data.get("error_code") or 0),
        )


@dataclass
class TaskRecord:
    """Detailed task record, as returned by ``GET .../tasks/<task_id>``."""
    id: str
    status: str
    type: str = ""
    begin_at: str = ""
    created_at: str = ""
    last_updated_at: str = ""
    user_id: str = ""
    user_name: str = ""
    user_ip: str = ""
    request_data: Dict[str, Any] = field(default_factory=dict)
    detailed_status: DetailedStatus = field(default_factory=DetailedStatus)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "TaskRecord":
        if not isinstance(data, dict):
            raise TypeError(f"task record must be a JSON object, got {type(data).__name__}")
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            type=str(data.get("type") or ""),
            begin_at=str(data.get("begin_at") or ""),
            created_at=str(data.get("created_at") or ""),
            last_updated_at=str(data.get("last_updated_at") or ""),
            user_id=str(data.get("user_id") or ""),
            user_name=str(data.get("user_name") or ""),
            user_ip=str(data.get("user_ip") or ""),
            request_data=dict(data.get("request_data") or {}),
            detailed_status=DetailedStatus.from_json(data.get("detailed_status")),
            raw=data,
        )

    @property
    def succeeded(self) -> bool:
        return self.status == TASK_STATUS_SUCCESS and self.detailed_status.error_code == 0


@dataclass
class TaskCompleteInfo:
    """Message delivered once to a waiter: a record or an error, never both."""
    status: Optional[TaskRecord] = None
    error: Optional[BaseException] = None


def task_list_to_filter_expr(task_ids: Iterable[str]) -> str:
    """
    Render task ids as an Apstra list filter, e.g. ``id in ['abc','def']``.
    """
    quoted = ",".join(f"'{tid}'" for tid in task_ids)
    return f"id in [{quoted}]"


def parse_task_id(payload: Union[bytes, str, Dict[str, Any], None]) -> Optional[str]:
    """
    Return the task id if *payload* looks like ``{"task_id": "<non-empty>"}``.

    Anything that does not decode, is not an object, or carries an empty
    ``task_id`` means "this is not a task id response" and yields None.
    """
    if payload is None:
        return None
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        if not payload.strip():
            return None
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None
    task_id = payload.get("task_id")
    if isinstance(task_id, str) and task_id:
        return task_id
    return None
