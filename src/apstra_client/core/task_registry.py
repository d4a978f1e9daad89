"""
In-memory index of tasks somebody is waiting on, grouped by blueprint.

    {
      "blueprint_1": {"task_abc": <reply queue>, "task_def": <reply queue>},
      "blueprint_2": {"task_uvw": <reply queue>},
    }

A blueprint key exists only while it has at least one pending task.
No locking: the task monitor thread is the only reader and writer.
"""

from __future__ import annotations

import queue
from typing import Dict, List, Optional

from .tasks import TaskCompleteInfo


class PendingTaskData:

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, "queue.Queue[TaskCompleteInfo]"]] = {}

    def add(self, blueprint_id: str, task_id: str, reply: "queue.Queue[TaskCompleteInfo]") -> None:
        # a second registration for the same pair replaces the first one
        self._data.setdefault(blueprint_id, {})[task_id] = reply

    def remove(self, blueprint_id: str, task_id: str) -> None:
        tasks = self._data.get(blueprint_id)
        if tasks is None:
            return
        tasks.pop(task_id, None)
        if not tasks:
            del self._data[blueprint_id]

    def reply_for(self, blueprint_id: str, task_id: str) -> Optional["queue.Queue[TaskCompleteInfo]"]:
        return self._data.get(blueprint_id, {}).get(task_id)

    def blueprint_ids(self) -> List[str]:
        return list(self._data)

    def task_ids(self, blueprint_id: str) -> List[str]:
        return list(self._data.get(blueprint_id, {}))

    def blueprint_count(self) -> int:
        return len(self._data)

    def is_empty(self) -> bool:
        return self.blueprint_count() == 0

    def __contains__(self, blueprint_id: object) -> bool:
        return blueprint_id in self._data

    def __len__(self) -> int:
        """Total number of pending tasks across all blueprints."""
        return sum(len(tasks) for tasks in self._data.values())
