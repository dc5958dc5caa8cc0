from typing import Optional
from uuid import UUID


class TaskflowError(Exception):
    """Base class for errors raised by the task lifecycle engine."""


class DependencyUnavailableError(TaskflowError):
    """The database or the queue backend cannot be reached."""

    def __init__(self, dependency: str, reason: str):
        self.dependency = dependency
        self.reason = reason
        super().__init__(f"{dependency} unavailable: {reason}")


class TaskUpdateRejected(TaskflowError):
    """A conditional status write matched no row although the task exists."""


class InvalidTransitionError(TaskUpdateRejected):
    def __init__(self, task_id: UUID, current: str, requested: str):
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id}: illegal transition {current} -> {requested}")


class StaleAttemptError(TaskUpdateRejected):
    def __init__(self, task_id: UUID, attempt: Optional[int], active_attempt: int):
        self.task_id = task_id
        self.attempt = attempt
        self.active_attempt = active_attempt
        super().__init__(
            f"Task {task_id}: write from attempt {attempt} rejected, active attempt is {active_attempt}"
        )
