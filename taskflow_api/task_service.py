import logging
from typing import List, Optional

from taskflow_api.config import Settings
from taskflow_api.crud_task import TaskId, TaskStore
from taskflow_api.models import Task, TaskStatus
from taskflow_api.queue_manager import JobOptions, JobPayload, JobQueue
from taskflow_api.retry_policy import BackoffOptions, BackoffType

logger = logging.getLogger(__name__)


def job_options_from_settings(settings: Settings) -> JobOptions:
    return JobOptions(
        initial_delay=settings.initial_delay,
        max_attempts=settings.max_attempts,
        backoff=BackoffOptions(
            type=BackoffType(settings.backoff_type),
            delay=settings.backoff_delay,
            multiplier=settings.backoff_multiplier,
            max_delay=settings.backoff_max_delay,
        ),
    )


class TaskService:
    """Entry point used by the HTTP layer: record a task, then queue it."""

    def __init__(self, store: TaskStore, queue: JobQueue, job_options: Optional[JobOptions] = None):
        self.store = store
        self.queue = queue
        self.job_options = job_options or JobOptions()

    async def create_task(self, name: str, description: str) -> Task:
        task = await self.store.create(name, description)
        try:
            await self.queue.enqueue(
                JobPayload(task_id=str(task.id), name=task.name, description=task.description),
                self.job_options,
            )
        except Exception:
            # no transaction spans store and queue: the task stays pending without a job
            logger.exception("Failed to enqueue task %s; record left pending", task.id)
            raise
        return task

    async def get_task(self, task_id: TaskId) -> Optional[Task]:
        return await self.store.get(task_id)

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        return await self.store.list(status=status)
