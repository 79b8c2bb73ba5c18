"""In-process work queue for background units with a declared number of tries."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Literal, Optional, Protocol

from .events import emit_task_event


LOGGER = logging.getLogger(__name__)

TaskStatus = Literal["pending", "running", "retrying", "succeeded", "failed"]


class UnitOfWork(Protocol):
    """A restartable piece of background work.

    ``run`` receives the 1-based attempt number. Raising lets the queue run the
    unit again until ``tries`` is used up. A unit may also define
    ``on_exhausted(message)``, called once the queue gives up on it.
    """

    name: str
    tries: int
    timeout: float

    def run(self, attempt: int) -> None: ...


@dataclass
class QueuedTask:
    """Represents a background unit scheduled by the work queue."""

    id: str
    name: str
    unit: UnitOfWork
    tries: int
    timeout: float
    status: TaskStatus = "pending"
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def mark_running(self) -> None:
        self.status = "running"
        self.attempts += 1
        self.started_at = time.time()

    def mark_retrying(self, message: str) -> None:
        self.status = "retrying"
        self.error = message

    def mark_finished(self) -> None:
        self.status = "succeeded"
        self.completed_at = time.time()
        self.error = None

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.completed_at = time.time()
        self.error = message

    @property
    def finished(self) -> bool:
        return self.status in {"succeeded", "failed"}


class WorkQueue:
    """Run units on a thread pool, re-executing failures until their tries run out."""

    def __init__(
        self,
        *,
        max_workers: int = 2,
        history_limit: int = 200,
        retry_delay: float = 0.0,
    ) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="lms-work")
        self._tasks: Deque[QueuedTask] = deque()
        self._index: Dict[str, QueuedTask] = {}
        self._history_limit = history_limit
        self._retry_delay = retry_delay
        self._condition = threading.Condition()
        self._outstanding = 0
        self._closed = False

    def enqueue(self, unit: UnitOfWork) -> QueuedTask:
        entry = QueuedTask(
            id=uuid.uuid4().hex,
            name=unit.name,
            unit=unit,
            tries=max(1, int(unit.tries)),
            timeout=float(unit.timeout),
        )
        with self._condition:
            if self._closed:
                raise RuntimeError("Work queue has been shut down")
            self._tasks.append(entry)
            self._index[entry.id] = entry
            self._outstanding += 1
            self._prune_history_locked()
        emit_task_event("queued", f"Queued {entry.name}", payload={"task_id": entry.id, "tries": entry.tries})
        self._executor.submit(self._execute, entry)
        return entry

    def list(self) -> List[QueuedTask]:
        with self._condition:
            return list(self._tasks)

    def get(self, task_id: str) -> Optional[QueuedTask]:
        with self._condition:
            return self._index.get(task_id)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued unit, including ones they enqueue, has finished."""

        with self._condition:
            return self._condition.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._condition:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _execute(self, task: QueuedTask) -> None:
        task.mark_running()
        emit_task_event(
            "running",
            f"Running {task.name}",
            payload={"task_id": task.id, "attempt": task.attempts, "tries": task.tries},
        )
        started = time.perf_counter()
        try:
            task.unit.run(task.attempts)
        except Exception as error:
            message = str(error) or error.__class__.__name__
            if task.attempts < task.tries:
                task.mark_retrying(message)
                LOGGER.warning(
                    "Background unit %s failed on attempt %s/%s: %s; retrying",
                    task.name,
                    task.attempts,
                    task.tries,
                    message,
                )
                if self._retry_delay:
                    time.sleep(self._retry_delay)
                try:
                    self._executor.submit(self._execute, task)
                    return
                except RuntimeError:
                    message = f"{message} (queue shut down before retry)"
                    LOGGER.warning("Could not retry %s: work queue is shut down", task.name)
            task.mark_failed(message)
            LOGGER.exception("Background unit %s failed after %s attempt(s)", task.name, task.attempts)
            self._notify_exhausted(task, message)
            emit_task_event(
                "failed",
                f"{task.name} exhausted its retries",
                payload={"task_id": task.id, "attempts": task.attempts, "error": message},
                level=logging.ERROR,
            )
        else:
            task.mark_finished()
            emit_task_event(
                "succeeded",
                f"Finished {task.name}",
                payload={"task_id": task.id, "attempt": task.attempts},
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        self._settle()

    def _notify_exhausted(self, task: QueuedTask, message: str) -> None:
        hook = getattr(task.unit, "on_exhausted", None)
        if hook is None:
            return
        try:
            hook(message)
        except Exception:
            LOGGER.exception("Exhaustion handler of %s failed", task.name)

    def _settle(self) -> None:
        with self._condition:
            self._outstanding -= 1
            self._prune_history_locked()
            self._condition.notify_all()

    def _prune_history_locked(self) -> None:
        while len(self._tasks) > self._history_limit:
            oldest = self._tasks[0]
            if not oldest.finished:
                break
            self._tasks.popleft()
            self._index.pop(oldest.id, None)


__all__ = ["QueuedTask", "TaskStatus", "UnitOfWork", "WorkQueue"]
