import logging
from typing import Any, Optional

from taskflow_api.crud_task import TaskId, TaskStore, clamp_progress
from taskflow_api.models import Task, TaskStatus

logger = logging.getLogger(__name__)

INITIAL_PROGRESS = 10


class StatusProjector:
    """
    Writes job lifecycle events into the task store.

    Every write carries the attempt number it belongs to, so the store can
    refuse writes from an attempt that has been superseded. The task's
    `retries` column is the single failure counter: it is bumped by the
    failed transition and handed back to the caller for the retry decision.
    """

    def __init__(self, store: TaskStore, initial_progress: int = INITIAL_PROGRESS):
        self.store = store
        self.initial_progress = clamp_progress(initial_progress)

    async def start_attempt(self, task_id: TaskId, attempt: int) -> Optional[Task]:
        task = await self.store.update_status(
            task_id, TaskStatus.PROCESSING, self.initial_progress, attempt=attempt
        )
        if task is not None:
            logger.info("Task %s processing (attempt %s)", task_id, attempt)
        return task

    async def report_progress(self, task_id: TaskId, attempt: int, progress: int) -> Optional[Task]:
        return await self.store.update_status(
            task_id, TaskStatus.PROCESSING, clamp_progress(progress), attempt=attempt
        )

    async def complete(self, task_id: TaskId, attempt: int, result: Any) -> Optional[Task]:
        task = await self.store.update_status(
            task_id, TaskStatus.COMPLETED, 100, result=result, attempt=attempt
        )
        if task is not None:
            logger.info("Task %s completed (attempt %s)", task_id, attempt)
        return task

    async def record_failure(self, task_id: TaskId, attempt: int, error: str) -> Optional[int]:
        """Mark the attempt failed; returns the task's failure count."""
        task = await self.store.update_status(
            task_id, TaskStatus.FAILED, 0, error=error, attempt=attempt
        )
        if task is None:
            return None
        logger.info("Task %s failed (attempt %s, retries=%s): %s", task_id, attempt, task.retries, error)
        return task.retries
