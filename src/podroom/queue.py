"""
Task Queue

Persistent FIFO queue of episode-processing tasks, drained by a fixed
pool of asyncio workers. State lives in a JSON file that several
processes may share (the API server and CLI commands), so every
mutation re-reads the file under an exclusive file lock, merges it into
memory and writes it back.
"""

import asyncio
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import portalocker
from pydantic import ValidationError as PydanticValidationError

from .config import settings
from .errors import TaskCancelledError, ValidationError
from .events import EventEmitter
from .models import QueueStatus, Task, TaskInput, TaskStatus, TaskType, utcnow
from .stats import UsageStats

logger = logging.getLogger(__name__)

CANCELED_MESSAGE = "Canceled by request"
INTERRUPTED_MESSAGE = "Interrupted by restart before completion"

# (task, should_cancel) -> result dict; a "metrics" key is copied onto the task
TaskProcessor = Callable[[Task, Callable[[], bool]], Awaitable[Dict[str, Any]]]

# Merging never moves a task backwards along PENDING -> RUNNING -> terminal
_STATUS_RANK = {
    TaskStatus.PENDING: 0,
    TaskStatus.RUNNING: 1,
    TaskStatus.READY: 2,
    TaskStatus.FAILED: 2,
}


class TaskQueue:
    """
    Persistent queue for background episode processing.

    Tasks move PENDING -> RUNNING -> READY | FAILED and never leave a
    terminal state. There is no automatic retry: a failed task stays
    failed, and resubmitting the URL creates a new task.

    Constructing a queue only reads the state file. Tasks left RUNNING by
    a dead process are failed by recover_interrupted(), which start()
    calls; a second process opening the same file (a CLI command next to
    the server) never touches the server's running tasks.
    """

    def __init__(
        self,
        processor: Optional[TaskProcessor] = None,
        state_file: Optional[Path] = None,
        max_concurrent: int = None,
        poll_interval: float = None,
        task_timeout: float = None,
        events: Optional[EventEmitter] = None,
        stats: Optional[UsageStats] = None,
    ):
        self.processor = processor
        self.state_file = Path(state_file or settings.queue_state_path)
        self.lock_file = self.state_file.with_suffix(".lock")
        self.max_concurrent = max_concurrent or settings.max_concurrent_tasks
        self.poll_interval = poll_interval or settings.queue_poll_interval
        self.task_timeout = task_timeout or settings.task_timeout_seconds
        self.events = events or EventEmitter()
        self.stats = stats or UsageStats()

        self.tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()
        self._in_transaction = False
        self._cancel_requested: set = set()
        self._active: set = set()
        self._workers: List[asyncio.Task] = []
        self._wakeup: Optional[asyncio.Event] = None
        self._running = False

        self.tasks = self._read_state()
        if self.tasks:
            logger.info(f"Loaded queue state: {len(self.tasks)} tasks")

    # --- Persistence ---

    def _read_state(self) -> Dict[str, Task]:
        """Tasks currently on disk; empty if the file is missing or unreadable."""
        if not self.state_file.exists():
            return {}
        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            return {
                task_id: Task.model_validate(task_data)
                for task_id, task_data in data.get("tasks", {}).items()
            }
        except Exception as e:
            logger.error(f"Failed to load queue state: {e}")
            return {}

    def _merge(self, on_disk: Dict[str, Task]) -> None:
        """Adopt tasks other processes created or moved further along."""
        with self._lock:
            for task_id, theirs in on_disk.items():
                ours = self.tasks.get(task_id)
                if ours is None or _STATUS_RANK[theirs.status] > _STATUS_RANK[ours.status]:
                    self.tasks[task_id] = theirs

    def _refresh(self) -> None:
        self._merge(self._read_state())

    def _write_state(self) -> None:
        try:
            data = {"tasks": {tid: t.model_dump(mode="json") for tid, t in self.tasks.items()}}
            tmp = self.state_file.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            tmp.replace(self.state_file)
        except OSError as e:
            logger.error(f"Failed to save queue state: {e}")

    @contextmanager
    def _transaction(self):
        """
        Read-merge-modify-write under the in-process lock and the file lock.
        Nested use joins the outer transaction.
        """
        with self._lock:
            if self._in_transaction:
                yield
                return

            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_file, "a", encoding="utf-8") as handle:
                portalocker.lock(handle, portalocker.LOCK_EX)
                self._in_transaction = True
                try:
                    self._refresh()
                    yield
                    self._write_state()
                finally:
                    self._in_transaction = False
                    portalocker.unlock(handle)

    # --- Submission and lookup ---

    @staticmethod
    def _validate(task_type: Union[str, TaskType], data: Union[dict, TaskInput]) -> tuple:
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise ValidationError(f"Unknown task type: {task_type}")

        try:
            task_input = data if isinstance(data, TaskInput) else TaskInput.model_validate(data or {})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid task data: {e.errors()[0]['msg']}")

        url = task_input.url.strip()
        if not url.lower().startswith(("http://", "https://")):
            raise ValidationError(f"Source URL must be http(s): {url!r}")
        return task_type, task_input.model_copy(update={"url": url})

    def _latest_for_url(self, url: str) -> Optional[Task]:
        matches = [t for t in self.tasks.values() if t.data.url == url]
        if not matches:
            return None
        return max(matches, key=lambda t: t.created_at)

    def add_task(self, task_type: Union[str, TaskType], data: Union[dict, TaskInput]) -> str:
        """
        Submit work. A URL with a non-terminal task already in the queue
        returns that task's id instead of creating a second one.

        Returns:
            Task ID

        Raises:
            ValidationError: If the type or payload is malformed
        """
        task_type, task_input = self._validate(task_type, data)

        with self._transaction():
            existing = self._latest_for_url(task_input.url)
            if existing and not existing.status.is_terminal:
                logger.info(f"Task already queued for {task_input.url}: {existing.id[:8]}")
                return existing.id

            task = Task(type=task_type, data=task_input)
            self.tasks[task.id] = task

        logger.info(f"Added to queue: {task_input.url} (ID: {task.id[:8]})")
        self.events.emit_background("task.created", {"task_id": task.id, "url": task_input.url})
        if self._wakeup is not None:
            self._wakeup.set()
        return task.id

    def get_task_status(self, task_id: str) -> Optional[Task]:
        self._refresh()
        return self.tasks.get(task_id)

    def get_task_by_url(self, url: str) -> Optional[Task]:
        """Most recently created task for a source URL."""
        self._refresh()
        return self._latest_for_url(url)

    def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        self._refresh()
        tasks = sorted(self.tasks.values(), key=lambda t: t.created_at)
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def get_queue_status(self) -> QueueStatus:
        self._refresh()
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks.values():
            counts[task.status] += 1
        return QueueStatus(
            pending=counts[TaskStatus.PENDING],
            running=counts[TaskStatus.RUNNING],
            completed=counts[TaskStatus.READY],
            failed=counts[TaskStatus.FAILED],
            total=len(self.tasks),
            max_concurrent=self.max_concurrent,
            current_concurrent=len(self._active),
        )

    # --- Cancellation ---

    def cancel(self, task_id: str) -> bool:
        """
        Best-effort cancel.

        PENDING tasks fail immediately. RUNNING tasks are flagged and fail
        once the pipeline reaches its next stage boundary; an external
        call already in flight is not interrupted.

        Returns:
            False if the task is unknown or already terminal
        """
        with self._transaction():
            task = self.tasks.get(task_id)
            if task is None or task.status.is_terminal:
                return False
            if task.status == TaskStatus.PENDING:
                self._finish(task, TaskStatus.FAILED, error=CANCELED_MESSAGE)
                logger.info(f"Canceled pending task {task_id[:8]}")
                return True
            self._cancel_requested.add(task_id)

        logger.info(f"Cancel requested for running task {task_id[:8]}")
        return True

    def is_cancel_requested(self, task_id: str) -> bool:
        return task_id in self._cancel_requested

    # --- Execution ---

    def recover_interrupted(self) -> int:
        """
        Fail tasks left RUNNING by a process that is gone (never reverted to
        PENDING). Tasks this queue is running itself are left alone.

        Returns:
            Number of tasks marked FAILED
        """
        with self._transaction():
            interrupted = [
                t for t in self.tasks.values()
                if t.status == TaskStatus.RUNNING and t.id not in self._active
            ]
            for task in interrupted:
                task.status = TaskStatus.FAILED
                task.error = INTERRUPTED_MESSAGE
                task.completed_at = task.updated_at = utcnow()

        if interrupted:
            logger.warning(f"Marked {len(interrupted)} interrupted tasks as failed")
        return len(interrupted)

    def _claim_next(self) -> Optional[Task]:
        """Move the oldest PENDING task to RUNNING. Atomic across threads and processes."""
        with self._transaction():
            pending = [t for t in self.tasks.values() if t.status == TaskStatus.PENDING]
            if not pending:
                return None
            task = min(pending, key=lambda t: t.created_at)
            task.status = TaskStatus.RUNNING
            task.started_at = task.updated_at = utcnow()
            self._active.add(task.id)
        return task

    def _finish(
        self,
        task: Task,
        status: TaskStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Record a terminal state. False if the stored task is already terminal."""
        with self._transaction():
            self._active.discard(task.id)
            self._cancel_requested.discard(task.id)
            current = self.tasks.get(task.id, task)
            if current.status.is_terminal:
                logger.warning(
                    f"Task {task.id[:8]} is already {current.status.value}; not recording {status.value}"
                )
                return False

            current.status = status
            current.result = result
            current.error = error
            if result and isinstance(result.get("metrics"), dict):
                current.metrics = result["metrics"]
            current.completed_at = current.updated_at = utcnow()
        return True

    def _require_processor(self) -> None:
        if self.processor is None:
            raise RuntimeError("TaskQueue has no processor")

    async def _run_task(self, task: Task) -> None:
        logger.info(f"Processing task {task.id[:8]}: {task.data.url}")
        await self.events.emit("task.started", {"task_id": task.id, "url": task.data.url})

        try:
            result = await asyncio.wait_for(
                self.processor(task, lambda: self.is_cancel_requested(task.id)),
                timeout=self.task_timeout,
            )
        except asyncio.TimeoutError:
            error = f"Task timed out after {self.task_timeout:.0f}s"
        except TaskCancelledError:
            error = CANCELED_MESSAGE
        except asyncio.CancelledError:
            self._finish(task, TaskStatus.FAILED, error="Interrupted by shutdown")
            raise
        except Exception as e:
            logger.exception(f"Task {task.id[:8]} failed")
            error = str(e) or e.__class__.__name__
        else:
            if self._finish(task, TaskStatus.READY, result=result):
                self.stats.incr("tasks_completed")
                logger.info(f"Task {task.id[:8]} completed")
                await self.events.emit("task.completed", {"task_id": task.id, "result": result})
            return

        if self._finish(task, TaskStatus.FAILED, error=error):
            self.stats.incr("tasks_failed")
            logger.warning(f"Task {task.id[:8]} failed: {error}")
            await self.events.emit("task.failed", {"task_id": task.id, "error": error})

    async def _worker(self, worker_id: int) -> None:
        logger.debug(f"Worker {worker_id} started")
        while self._running:
            task = self._claim_next()
            if task is None:
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            await self._run_task(task)
        logger.debug(f"Worker {worker_id} stopped")

    async def start(self) -> None:
        """Recover interrupted tasks and launch the worker pool on the running loop."""
        if self._running:
            return
        self._require_processor()
        self.recover_interrupted()
        self._running = True
        self._wakeup = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.max_concurrent)
        ]
        logger.info(f"Task queue started with {self.max_concurrent} workers")

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop accepting work; wait briefly for running tasks, then cancel."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        done, pending = await asyncio.wait(self._workers, timeout=grace_period)
        for worker in pending:
            worker.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        self._wakeup = None
        logger.info("Task queue stopped")

    async def run_until_idle(self) -> None:
        """Drain every pending task with up to max_concurrent at a time, then return."""
        self._require_processor()

        async def drain():
            while True:
                task = self._claim_next()
                if task is None:
                    return
                await self._run_task(task)

        await asyncio.gather(*(drain() for _ in range(self.max_concurrent)))
