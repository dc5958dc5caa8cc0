import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, Union

from redis.exceptions import RedisError

from taskflow_api.errors import TaskUpdateRejected
from taskflow_api.models import TaskStatus
from taskflow_api.queue_manager import Delivery, JobPayload, JobQueue, QueueEvent
from taskflow_worker.status_projector import StatusProjector

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"
NO_RESULT_ERROR = "work finished without a result"


@dataclass(frozen=True)
class Progress:
    value: int


@dataclass(frozen=True)
class Result:
    value: Any


WorkEvent = Union[Progress, Result]
WorkFunction = Callable[[JobPayload], AsyncIterator[WorkEvent]]


class _AttemptSuperseded(Exception):
    pass


class WorkerPool:
    """
    Fixed-size pool of queue consumers.

    Each worker takes one delivery at a time, runs the work function for it
    and projects the outcome into the task store before settling the
    delivery with the queue. Store or queue errors are not execution
    failures: they leave the delivery unacknowledged so the visibility
    timeout hands it to another worker.
    """

    def __init__(
        self,
        queue: JobQueue,
        projector: StatusProjector,
        work: WorkFunction,
        *,
        concurrency: int = 2,
        name: Optional[str] = None,
        max_stalled: int = 1,
        events: Optional["asyncio.Queue[QueueEvent]"] = None,
        poll_timeout: float = 1.0,
        error_backoff: float = 5.0,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.projector = projector
        self.work = work
        self.concurrency = concurrency
        self.name = name or f"worker-{os.getpid()}"
        self.max_stalled = max_stalled
        self.events = events
        self.poll_timeout = poll_timeout
        self.error_backoff = error_backoff
        self._stopping = asyncio.Event()
        self._workers: List[asyncio.Task] = []

    def consumer_name(self, index: int) -> str:
        return f"{self.name}-{index}"

    async def start(self):
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._consume(self.consumer_name(i)), name=self.consumer_name(i))
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool %s started with %d worker(s)", self.name, self.concurrency)

    def request_stop(self):
        self._stopping.set()

    async def stop(self, timeout: Optional[float] = None):
        """Let in-flight jobs finish, then stop all workers."""
        self._stopping.set()
        if not self._workers:
            return
        done, pending = await asyncio.wait(self._workers, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool %s stopped", self.name)

    async def run(self):
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    async def _consume(self, consumer: str):
        logger.info("Starting consumer: %s", consumer)
        while not self._stopping.is_set():
            try:
                delivery = await self.queue.dequeue(consumer, timeout=self.poll_timeout)
                if delivery is None:
                    continue
                await self.process(delivery)
            except asyncio.CancelledError:
                logger.info("Consumer %s cancelled", consumer)
                raise
            except Exception:
                logger.exception("Error in consumer loop %s", consumer)
                await asyncio.sleep(self.error_backoff)

    async def process(self, delivery: Delivery) -> Optional[QueueEvent]:
        """
        Run one delivery to its outcome.

        Returns the queue event that settled it, or None when the attempt
        was superseded and the delivery was left to its current owner.
        """
        job = delivery.job
        task_id, attempt = job.task_id, job.attempt
        logger.info(
            "Processing job %s (task %s, attempt %s/%s) on %s",
            job.id,
            task_id,
            attempt,
            job.options.max_attempts,
            delivery.consumer,
        )

        try:
            task = await self.projector.start_attempt(task_id, attempt)
        except TaskUpdateRejected as e:
            return await self._settle(await self._recover(delivery, e))
        if task is None:
            return await self._settle(await self.queue.discard(delivery, "task not found"))

        if delivery.times_delivered > self.max_stalled + 1:
            return await self._fail(delivery, STALLED_ERROR)

        keep_alive = asyncio.create_task(self._keep_alive(delivery))
        try:
            result, failure = await self._execute(delivery)
        except _AttemptSuperseded as e:
            logger.warning("Abandoning job %s: %s", job.id, e)
            return None
        finally:
            keep_alive.cancel()
            await asyncio.gather(keep_alive, return_exceptions=True)

        if failure is not None:
            return await self._fail(delivery, failure)

        try:
            await self.projector.complete(task_id, attempt, result)
        except TaskUpdateRejected as e:
            logger.warning("Abandoning job %s: %s", job.id, e)
            return None
        return await self._settle(await self.queue.ack_success(delivery))

    async def _execute(self, delivery: Delivery):
        """Drive the work function; returns (result, error message or None)."""
        job = delivery.job
        events = self.work(job.payload)
        result = None
        has_result = False
        try:
            while True:
                try:
                    event = await events.__anext__()
                except StopAsyncIteration:
                    if not has_result:
                        logger.warning("Task %s attempt %s: %s", job.task_id, job.attempt, NO_RESULT_ERROR)
                        return None, NO_RESULT_ERROR
                    return result, None
                except Exception as e:
                    logger.warning("Task %s attempt %s raised: %r", job.task_id, job.attempt, e)
                    return None, str(e) or type(e).__name__

                if isinstance(event, Progress):
                    try:
                        await self.projector.report_progress(job.task_id, job.attempt, event.value)
                    except TaskUpdateRejected as e:
                        raise _AttemptSuperseded(str(e)) from e
                elif isinstance(event, Result):
                    result = event.value
                    has_result = True
                else:
                    raise TypeError(f"Unknown work event {event!r}")
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _keep_alive(self, delivery: Delivery):
        """Renew the delivery while the work runs so it is not reclaimed."""
        interval = self.queue.visibility_timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.queue.touch(delivery)
            except RedisError:
                logger.warning("Could not renew job %s", delivery.job.id, exc_info=True)
                continue
            if not held:
                logger.warning("Job %s is no longer held by %s", delivery.job.id, delivery.consumer)
                return

    async def _recover(self, delivery: Delivery, rejected: TaskUpdateRejected) -> QueueEvent:
        """
        The task refused this attempt. If the refusal is because the
        attempt already reached an outcome that never got acknowledged
        (crash between the store write and the ack), settle it the same
        way now; otherwise the delivery is a duplicate.
        """
        job = delivery.job
        task = await self.projector.store.get(job.task_id)
        if task is not None and task.attempt == job.attempt:
            if task.status is TaskStatus.COMPLETED:
                return await self.queue.ack_success(delivery)
            if task.status is TaskStatus.FAILED:
                return await self.queue.ack_failure(delivery, task.retries, task.error or "")
        return await self.queue.discard(delivery, str(rejected))

    async def _fail(self, delivery: Delivery, error: str) -> Optional[QueueEvent]:
        job = delivery.job
        try:
            failures = await self.projector.record_failure(job.task_id, job.attempt, error)
        except TaskUpdateRejected as e:
            logger.warning("Abandoning job %s: %s", job.id, e)
            return None
        if failures is None:
            return await self._settle(await self.queue.discard(delivery, "task not found"))
        return await self._settle(await self.queue.ack_failure(delivery, failures, error))

    async def _settle(self, event: QueueEvent) -> QueueEvent:
        if self.events is not None:
            await self.events.put(event)
        return event
