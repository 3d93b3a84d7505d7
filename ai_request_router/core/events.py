"""
Owner-scoped change notifications for generation tasks.
"""

import logging
import threading
from typing import Callable, Dict, List

from ai_request_router.storage.models import GenerationTask

logger = logging.getLogger(__name__)

TaskListener = Callable[[GenerationTask], None]


class TaskBroadcaster:
    """Fan out task state changes to subscribers of the task's owner.

    A failing listener is logged and skipped; it never blocks delivery
    to the others or the state change that triggered it.
    """

    def __init__(self):
        self._listeners: Dict[str, List[TaskListener]] = {}
        self._lock = threading.Lock()

    def subscribe(self, owner: str, listener: TaskListener) -> Callable[[], None]:
        """Register a listener for one owner's tasks.

        Returns:
            Callable that removes the subscription
        """
        with self._lock:
            self._listeners.setdefault(owner, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(owner, [])
                if listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(owner, None)

        return unsubscribe

    def publish(self, task: GenerationTask) -> None:
        with self._lock:
            listeners = list(self._listeners.get(task.owner, ()))
        for listener in listeners:
            try:
                listener(task)
            except Exception:
                logger.exception(
                    "Task listener failed for task %s (%s)", task.id, task.status.value
                )

    def subscriber_count(self, owner: str) -> int:
        with self._lock:
            return len(self._listeners.get(owner, ()))
