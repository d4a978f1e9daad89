"""
Task monitor: turn Apstra's asynchronous tasks into blocking calls.

One background thread owns a `PendingTaskData` registry. Callers never touch
the registry; they talk to the thread through a single inbound queue and get
their answer on a private one-slot reply queue.

The thread waits for the first of:
  - a new registration  -> add it, (re)arm the timer at first_check_delay_sec
  - the timer firing    -> poll every blueprint with pending tasks, resolve
                           finished ones, re-arm at poll_interval_sec if any
                           task is still pending
  - a shutdown request  -> keep polling until the registry drains, then exit

Transport contract (duck-typed, implemented by ApstraClient):
    get_blueprint_tasks_status(blueprint_id, task_ids) -> Dict[task_id, status]
    get_blueprint_task_status_by_id(blueprint_id, task_id) -> TaskRecord

Usage:
    monitor = TaskMonitor(client)
    record = monitor.wait("bp-1", "task-1")   # blocks until the task is done
    monitor.shutdown()
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .errors import (
    TaskDetailError,
    TaskMonitorClosedError,
    TaskMonitorError,
    TaskStatusUnexpectedError,
    TaskUnknownError,
)
from .task_registry import PendingTaskData
from .tasks import PENDING_STATUSES, TERMINAL_STATUSES, TaskCompleteInfo, TaskRecord

log = logging.getLogger("apstra.tasks")

DEFAULT_FIRST_CHECK_DELAY_SEC = 0.1
DEFAULT_POLL_INTERVAL_SEC = 0.5

ErrorSink = Callable[[Exception], Any]


@dataclass
class TaskMonitorOptions:
    """Timer settings. Tests shrink these to keep suites fast."""
    first_check_delay_sec: float = DEFAULT_FIRST_CHECK_DELAY_SEC
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC


@dataclass
class TaskMonitorRequest:
    blueprint_id: str
    task_id: str
    reply: "queue.Queue[TaskCompleteInfo]"


_SHUTDOWN = object()


def _closed_error(blueprint_id: str, task_id: str) -> TaskMonitorClosedError:
    return TaskMonitorClosedError(
        f"blueprint '{blueprint_id}' task '{task_id}' - task monitor is shut down",
        blueprint_id,
        task_id,
    )


class TaskMonitor:
    """Background poller resolving Apstra tasks for any number of waiting threads.

    Args:
        transport: Object implementing the two task status calls (see module doc).
        options: Timer settings; defaults to 100ms first check, 500ms poll interval.
        error_sink: Optional callable receiving batch poll failures. When unset,
            those failures are logged at ERROR level.
    """

    def __init__(
        self,
        transport: Any,
        *,
        options: Optional[TaskMonitorOptions] = None,
        error_sink: Optional[ErrorSink] = None,
    ) -> None:
        self.transport = transport
        self.options = options or TaskMonitorOptions()
        self.error_sink = error_sink

        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._pending = PendingTaskData()
        self._deadline: Optional[float] = None
        self._shutdown_requested = False

        # guards start/close and every put on the inbox, never the registry
        self._lock = threading.Lock()
        self._closed = False
        self._thread: Optional[threading.Thread] = None

    # ------------- Public API -------------

    @property
    def pending(self) -> PendingTaskData:
        """The registry. Only safe to inspect while the monitor thread is idle or stopped."""
        return self._pending

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitor thread (no-op when already running)."""
        with self._lock:
            self._start_locked()

    def wait(self, blueprint_id: str, task_id: str) -> TaskRecord:
        """
        Block until Apstra reports *task_id* (scoped to *blueprint_id*) as finished.

        Returns the detailed TaskRecord for succeeded/failed/timeout tasks.
        Raises a TaskMonitorError subclass when the task is unknown to the
        server, reports an unexpected status, or its record cannot be fetched.
        """
        reply: "queue.Queue[TaskCompleteInfo]" = queue.Queue(maxsize=1)
        with self._lock:
            dead = self._thread is not None and not self._thread.is_alive()
            if self._closed or dead:
                raise _closed_error(blueprint_id, task_id)
            self._start_locked()
            self._inbox.put(TaskMonitorRequest(blueprint_id, task_id, reply))

        log.debug("awaiting completion of blueprint '%s' task '%s'", blueprint_id, task_id)
        info = reply.get()
        if info.error is not None:
            raise info.error
        if info.status is None:
            raise TaskDetailError(
                f"blueprint '{blueprint_id}' task '{task_id}' completed without a task record",
                blueprint_id,
                task_id,
            )
        return info.status

    def shutdown(self, *, wait: bool = True, timeout: Optional[float] = None) -> None:
        """
        Stop accepting registrations and let the monitor drain.

        Tasks already registered are still polled to completion; with
        ``wait=True`` this call blocks until that has happened (or *timeout*).
        """
        with self._lock:
            if not self._closed:
                self._closed = True
                if self._thread is not None:
                    self._inbox.put(_SHUTDOWN)
            thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    # ------------- Main loop -------------

    def _start_locked(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="apstra-task-monitor", daemon=True)
        self._thread.start()

    def _should_exit(self) -> bool:
        return self._shutdown_requested and self._pending.is_empty()

    def _run(self) -> None:
        log.debug("task monitor started")
        try:
            while not self._should_exit():
                try:
                    msg = self._next_event()
                    if msg is None:
                        self._check()
                    elif msg is _SHUTDOWN:
                        log.info("task monitor shutdown requested, %d task(s) still pending", len(self._pending))
                        self._shutdown_requested = True
                    else:
                        self._register(msg)  # type: ignore[arg-type]
                except Exception:
                    log.exception("task monitor loop error, continuing")
                    if not self._pending.is_empty() and self._deadline is None:
                        self._start_timer(self.options.poll_interval_sec)
        finally:
            self._abandon_outstanding()
        log.info("task monitor exiting")

    def _abandon_outstanding(self) -> None:
        """Close the monitor and fail every waiter it can no longer answer."""
        with self._lock:
            self._closed = True
        # nothing can be enqueued once _closed is set under the lock
        while True:
            try:
                msg = self._inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(msg, TaskMonitorRequest):
                self._pending.add(msg.blueprint_id, msg.task_id, msg.reply)
        if self._pending.is_empty():
            return
        log.error("task monitor stopped with %d task(s) pending; failing their waiters", len(self._pending))
        for bp_id in self._pending.blueprint_ids():
            for task_id in self._pending.task_ids(bp_id):
                self._deliver(bp_id, task_id, TaskCompleteInfo(error=_closed_error(bp_id, task_id)))

    def _next_event(self) -> Optional[object]:
        """Return the next inbound message, or None once the poll timer fires."""
        if self._deadline is None:
            return self._inbox.get()
        remaining = self._deadline - time.monotonic()
        if remaining > 0:
            try:
                return self._inbox.get(timeout=remaining)
            except queue.Empty:
                pass
        self._deadline = None
        return None

    def _register(self, req: TaskMonitorRequest) -> None:
        log.debug("new task arrived: bp '%s', task '%s'", req.blueprint_id, req.task_id)
        self._stop_timer()
        if self._pending.reply_for(req.blueprint_id, req.task_id) is not None:
            log.warning(
                "blueprint '%s' task '%s' registered twice; only the latest waiter will be answered",
                req.blueprint_id, req.task_id,
            )
        self._pending.add(req.blueprint_id, req.task_id, req.reply)
        self._start_timer(self.options.first_check_delay_sec)

    def _stop_timer(self) -> None:
        self._deadline = None

    def _start_timer(self, delay_sec: float) -> None:
        self._deadline = time.monotonic() + max(0.0, float(delay_sec))

    # ------------- Poll sweep -------------

    def _check(self) -> None:
        """One poll sweep over every blueprint with outstanding tasks."""
        self._stop_timer()
        for bp_id in self._pending.blueprint_ids():
            task_ids = self._pending.task_ids(bp_id)
            if not task_ids:
                continue
            try:
                statuses = self.transport.get_blueprint_tasks_status(bp_id, task_ids)
            except Exception as exc:
                err = TaskMonitorError(f"error getting tasks for blueprint '{bp_id}' - {exc}", bp_id)
                err.__cause__ = exc
                self._handle_error(err)
                continue
            try:
                self._check_tasks_in_blueprint(bp_id, statuses)
            except Exception as exc:
                err = TaskMonitorError(f"error checking tasks for blueprint '{bp_id}' - {exc!r}", bp_id)
                err.__cause__ = exc
                self._handle_error(err)

        if not self._pending.is_empty():
            log.debug(
                "have %d blueprints with outstanding tasks, resetting timer",
                self._pending.blueprint_count(),
            )
            self._start_timer(self.options.poll_interval_sec)

    def _check_tasks_in_blueprint(self, bp_id: str, statuses: Dict[str, str]) -> None:
        for task_id in self._pending.task_ids(bp_id):
            if task_id not in statuses:
                self._deliver_error(TaskUnknownError(
                    f"blueprint '{bp_id}' task '{task_id}' unknown to Apstra server", bp_id, task_id,
                ))
                continue

            status = statuses[task_id]
            if isinstance(status, str) and status in PENDING_STATUSES:
                continue
            if not isinstance(status, str) or status not in TERMINAL_STATUSES:
                self._deliver_error(TaskStatusUnexpectedError(
                    f"blueprint '{bp_id}' task '{task_id}' status unexpected: {status}",
                    bp_id, task_id, status,
                ))
                continue

            try:
                record = self.transport.get_blueprint_task_status_by_id(bp_id, task_id)
            except Exception as exc:
                err = TaskDetailError(
                    f"blueprint '{bp_id}' task '{task_id}' finished ({status}) but fetching its details failed - {exc}",
                    bp_id, task_id,
                )
                err.__cause__ = exc
                self._deliver_error(err)
                continue
            if not isinstance(record, TaskRecord):
                self._deliver_error(TaskDetailError(
                    f"blueprint '{bp_id}' task '{task_id}' finished ({status}) but no task record came back",
                    bp_id, task_id,
                ))
                continue
            log.debug("blueprint '%s' task '%s' complete: %s", bp_id, task_id, status)
            self._deliver(bp_id, task_id, TaskCompleteInfo(status=record))

    def _deliver_error(self, err: TaskMonitorError) -> None:
        log.warning("%s", err)
        self._deliver(err.blueprint_id, err.task_id, TaskCompleteInfo(error=err))

    def _deliver(self, bp_id: str, task_id: str, info: TaskCompleteInfo) -> None:
        reply = self._pending.reply_for(bp_id, task_id)
        self._pending.remove(bp_id, task_id)
        if reply is None:
            return
        try:
            reply.put_nowait(info)
        except queue.Full:
            log.error("reply for blueprint '%s' task '%s' already delivered; dropping", bp_id, task_id)

    def _handle_error(self, err: Exception) -> None:
        if self.error_sink is None:
            log.error("%s", err)
            return
        try:
            self.error_sink(err)
        except Exception:
            log.exception("task monitor error sink raised while handling: %s", err)
