"""
Task lifecycle reporting.

The dispatcher and the job queue push started/completed/failed events to a
status sink. Sinks are fire-and-forget: a failing sink is logged and never
changes the outcome of the task it reports on.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..storage.models import utc_now

logger = logging.getLogger(__name__)


class TaskState(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskStatus:
    task_id: str
    label: str
    state: TaskState
    detail: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class StatusSink:
    """Receiver of task lifecycle events. The base class ignores everything."""

    def task_started(self, task_id: str, label: str) -> None:
        pass

    def task_completed(self, task_id: str, detail: Optional[str] = None) -> None:
        pass

    def task_failed(self, task_id: str, error: str) -> None:
        pass


class NullStatusSink(StatusSink):
    """Sink used when no one is listening."""


Listener = Callable[[TaskStatus], None]


class StatusStore(StatusSink):
    """In-memory sink that keeps the latest state of every task and notifies listeners."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._tasks: Dict[str, TaskStatus] = {}
        self._listeners: List[Listener] = []
        self._clock = clock

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def task_started(self, task_id: str, label: str) -> None:
        self._update(TaskStatus(task_id, label, TaskState.RUNNING, started_at=self._clock()))

    def task_completed(self, task_id: str, detail: Optional[str] = None) -> None:
        self._finish(task_id, TaskState.COMPLETED, detail)

    def task_failed(self, task_id: str, error: str) -> None:
        self._finish(task_id, TaskState.FAILED, error)

    def get(self, task_id: str) -> Optional[TaskStatus]:
        return self._tasks.get(task_id)

    def active(self) -> List[TaskStatus]:
        return [t for t in self._tasks.values() if t.state == TaskState.RUNNING]

    def all(self) -> List[TaskStatus]:
        return list(self._tasks.values())

    def _finish(self, task_id: str, state: TaskState, detail: Optional[str]) -> None:
        current = self._tasks.get(task_id) or TaskStatus(task_id, task_id, TaskState.RUNNING)
        self._update(replace(current, state=state, detail=detail, finished_at=self._clock()))

    def _update(self, status: TaskStatus) -> None:
        self._tasks[status.task_id] = status
        for listener in list(self._listeners):
            listener(status)


def notify(sink: Optional[StatusSink], event: str, *args) -> None:
    """Deliver one event to `sink`, logging and dropping any sink failure."""
    if sink is None:
        return
    try:
        getattr(sink, event)(*args)
    except Exception:
        logger.warning("Status sink failed on %s", event, exc_info=True)
