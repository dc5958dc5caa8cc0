# tests/fakes.py

from __future__ import annotations

from dataclasses import dataclass, field

from taskflow_api.crud_task import TaskStore
from taskflow_api.models import TaskStatus
from taskflow_api.queue_manager import JobPayload
from taskflow_worker.task_processor import Progress, Result


@dataclass(frozen=True)
class Snapshot:
    status: TaskStatus
    progress: int
    result: object
    error: str | None
    retries: int
    attempt: int


class RecordingTaskStore(TaskStore):
    """
    Real TaskStore that remembers every accepted write.

    Lets tests assert on the full history of a task rather than only on
    its final state.
    """

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.history: list[Snapshot] = []

    async def update_status(self, *args, **kwargs):
        task = await super().update_status(*args, **kwargs)
        if task is not None:
            self.history.append(
                Snapshot(
                    status=task.status,
                    progress=task.progress,
                    result=task.result,
                    error=task.error,
                    retries=task.retries,
                    attempt=task.attempt,
                )
            )
        return task


@dataclass
class ScriptedWork:
    """
    Deterministic, instantaneous work function.

    Yields the given progress values, then either raises for the first
    `fail_times` calls or yields a result echoing the task name.
    """

    progress: tuple[int, ...] = (30, 60, 90)
    fail_times: int = 0
    error: str = "simulated failure"
    calls: list[JobPayload] = field(default_factory=list)

    async def __call__(self, payload: JobPayload):
        self.calls.append(payload)
        call_no = len(self.calls)
        for value in self.progress:
            yield Progress(value)
        if call_no <= self.fail_times:
            raise RuntimeError(self.error)
        yield Result({"name": payload.name, "call": call_no})


def always_failing(error: str = "simulated failure") -> ScriptedWork:
    return ScriptedWork(progress=(40,), fail_times=10**6, error=error)
