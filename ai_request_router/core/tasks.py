"""
Generation task lifecycle.

Tasks move pending -> processing -> completed | failed. Every transition
is a conditional update in the store, so when two callers race to
finalize the same task exactly one wins; the loser is a silent no-op
and nothing is broadcast for it.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ai_request_router.storage.models import (
    GenerationTask,
    TaskResult,
    TaskStatus,
    TaskType,
)
from ai_request_router.storage.repository import TaskRepository, utc_now
from .events import TaskBroadcaster

logger = logging.getLogger(__name__)

DEFAULT_PROCESSING_TIMEOUT_SECONDS = 600
DEFAULT_MAX_WORKERS = 4

TaskProcessor = Callable[[GenerationTask], TaskResult]
CompletionHook = Callable[[GenerationTask], None]


class TaskNotFoundError(Exception):
    """Raised when a task id does not exist in the store."""
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskManager:
    """Creates, dispatches, finalizes and broadcasts generation tasks.

    Args:
        repository: Task store
        processor: Runs the external generation for a task; required
            for dispatching
        broadcaster: Receives every state change
        max_workers: Worker pool size when no executor is supplied
        processing_timeout_seconds: Age after which a processing task
            is considered stuck by reconcile_stale_tasks
    """

    def __init__(
        self,
        repository: TaskRepository,
        processor: Optional[TaskProcessor] = None,
        broadcaster: Optional[TaskBroadcaster] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        processing_timeout_seconds: float = DEFAULT_PROCESSING_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    ):
        self.repository = repository
        self.processor = processor
        self.broadcaster = broadcaster or TaskBroadcaster()
        self.processing_timeout_seconds = processing_timeout_seconds
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="task-worker"
        )
        self._clock = clock
        self._id_factory = id_factory
        self._hooks: List[CompletionHook] = []
        self._in_flight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Call ``hook`` with each task that this manager finalizes."""
        self._hooks.append(hook)

    def create(
        self,
        owner: str,
        task_type: TaskType,
        prompt: str,
        project_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        dispatch: bool = True
    ) -> GenerationTask:
        """Persist a new pending task and hand it to the worker pool.

        Returns immediately; generation runs in the background.
        """
        task = GenerationTask(
            id=self._id_factory(),
            owner=owner,
            project_id=project_id,
            task_type=task_type,
            status=TaskStatus.PENDING,
            input_prompt=prompt,
            input_params=dict(params or {}),
            created_at=self._clock(),
        )
        self.repository.insert(task)
        logger.info("Created %s task %s for %s", task_type.value, task.id, owner)
        self.broadcaster.publish(task)
        if dispatch:
            self.dispatch(task.id)
        return task

    def dispatch(self, task_id: str) -> Optional[Future]:
        """Submit a task to the worker pool unless it is already in flight."""
        if self.processor is None:
            raise RuntimeError("TaskManager has no processor to dispatch to")
        with self._lock:
            future = self._in_flight.get(task_id)
            if future is not None and not future.done():
                return future
            future = self._executor.submit(self._run, task_id)
            self._in_flight[task_id] = future
        future.add_done_callback(lambda _: self._forget(task_id))
        return future

    def mark_processing(self, task_id: str) -> bool:
        """Move a pending task to processing. No-op for any other status."""
        if not self.repository.transition_to_processing(task_id, self._clock()):
            self._require(task_id)
            return False
        self._announce(task_id)
        return True

    def complete_task(self, task_id: str, result: TaskResult) -> bool:
        """Record a successful result. No-op unless the task is processing."""
        if not self.repository.transition_to_completed(task_id, result, self._clock()):
            self._require(task_id)
            logger.debug("Ignored completion for task %s", task_id)
            return False
        task = self._announce(task_id)
        logger.info("Completed task %s", task_id)
        self._run_hooks(task)
        return True

    def fail_task(self, task_id: str, error: str) -> bool:
        """Record a failure. No-op once the task is terminal."""
        if not self.repository.transition_to_failed(task_id, error, self._clock()):
            self._require(task_id)
            logger.debug("Ignored failure for task %s", task_id)
            return False
        task = self._announce(task_id)
        logger.error("Task %s failed: %s", task_id, error)
        self._run_hooks(task)
        return True

    def get_task(self, task_id: str) -> GenerationTask:
        return self._require(task_id)

    def get_active_tasks(self, owner: str) -> List[GenerationTask]:
        return self.repository.list_by_owner(
            owner, [TaskStatus.PENDING, TaskStatus.PROCESSING]
        )

    def get_completed_tasks(
        self,
        project_id: str,
        since: Optional[datetime] = None,
        limit: int = 20
    ) -> List[GenerationTask]:
        return self.repository.list_completed_for_project(project_id, since, limit)

    def resume_pending_tasks(self, owner: str) -> List[str]:
        """Re-dispatch every pending task of ``owner``.

        Processing tasks are left alone; they either finish or get
        failed by reconcile_stale_tasks.

        Returns:
            Ids of the tasks that were dispatched
        """
        pending = self.repository.list_by_owner(owner, [TaskStatus.PENDING], limit=1000)
        for task in pending:
            self.dispatch(task.id)
        if pending:
            logger.info("Resumed %d pending task(s) for %s", len(pending), owner)
        return [task.id for task in pending]

    def reconcile_stale_tasks(self, timeout_seconds: Optional[float] = None) -> List[str]:
        """Fail tasks stuck in processing for longer than the timeout.

        Returns:
            Ids of the tasks this call failed
        """
        timeout = self.processing_timeout_seconds if timeout_seconds is None else timeout_seconds
        cutoff = self._clock() - timedelta(seconds=timeout)
        failed = []
        for task in self.repository.list_processing_started_before(cutoff):
            if self.fail_task(task.id, f"Timed out after {int(timeout)}s in processing"):
                failed.append(task.id)
        if failed:
            logger.warning("Reconciled %d stale task(s)", len(failed))
        return failed

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, task_id: str) -> None:
        if not self.mark_processing(task_id):
            return
        task = self._require(task_id)
        try:
            result = self.processor(task)
        except Exception as e:
            self.fail_task(task_id, str(e) or e.__class__.__name__)
            return
        self.complete_task(task_id, result)

    def _announce(self, task_id: str) -> GenerationTask:
        task = self._require(task_id)
        self.broadcaster.publish(task)
        return task

    def _run_hooks(self, task: GenerationTask) -> None:
        for hook in list(self._hooks):
            try:
                hook(task)
            except Exception:
                logger.exception("Completion hook failed for task %s", task.id)

    def _require(self, task_id: str) -> GenerationTask:
        task = self.repository.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _forget(self, task_id: str) -> None:
        with self._lock:
            future = self._in_flight.get(task_id)
            if future is not None and future.done():
                del self._in_flight[task_id]
