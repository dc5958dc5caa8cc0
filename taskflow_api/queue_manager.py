"""
Delay-aware job queue on Redis.

Layout for a queue named <q>:

    taskflow:<q>:job:<id>   hash, job snapshot and scheduling options
    taskflow:<q>:delayed    zset, job ids scored by eligible-at (ms)
    taskflow:<q>:stream     stream, one entry per eligible delivery
    <q>-workers             consumer group on the stream

Eligible jobs sit in the stream; the consumer group gives each entry to a
single consumer and keeps it in the pending list until acknowledged, so a
consumer that dies before acking has its entries claimed by another one
once they have been idle longer than the visibility timeout. A consumer
that is still working keeps its entry alive with `touch`.
"""

import asyncio
import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import ResponseError, WatchError

from taskflow_api.retry_policy import DEFAULT_BACKOFF, BackoffOptions, BackoffType, decide

logger = logging.getLogger(__name__)

KEY_PREFIX = "taskflow"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class JobPayload:
    task_id: str
    name: str
    description: str


@dataclass(frozen=True)
class JobOptions:
    initial_delay: float = 1.0
    max_attempts: int = 3
    backoff: BackoffOptions = DEFAULT_BACKOFF

    def __post_init__(self):
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")


@dataclass(frozen=True)
class Job:
    id: str
    payload: JobPayload
    attempt: int
    options: JobOptions
    created_at: str
    last_error: Optional[str] = None

    @property
    def task_id(self) -> str:
        return self.payload.task_id

    def to_hash(self) -> Dict[str, str]:
        backoff = self.options.backoff
        return {
            "id": self.id,
            "task_id": self.payload.task_id,
            "name": self.payload.name,
            "description": self.payload.description,
            "attempt": str(self.attempt),
            "max_attempts": str(self.options.max_attempts),
            "initial_delay": repr(self.options.initial_delay),
            "backoff": json.dumps(
                {
                    "type": backoff.type.value,
                    "delay": backoff.delay,
                    "multiplier": backoff.multiplier,
                    "max_delay": backoff.max_delay,
                }
            ),
            "created_at": self.created_at,
            "last_error": self.last_error or "",
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "Job":
        try:
            backoff = json.loads(data["backoff"])
            return cls(
                id=data["id"],
                payload=JobPayload(
                    task_id=data["task_id"],
                    name=data["name"],
                    description=data["description"],
                ),
                attempt=int(data["attempt"]),
                options=JobOptions(
                    initial_delay=float(data["initial_delay"]),
                    max_attempts=int(data["max_attempts"]),
                    backoff=BackoffOptions(
                        type=BackoffType(backoff["type"]),
                        delay=float(backoff["delay"]),
                        multiplier=float(backoff["multiplier"]),
                        max_delay=backoff.get("max_delay"),
                    ),
                ),
                created_at=data["created_at"],
                last_error=data.get("last_error") or None,
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValueError(f"Failed to parse job: {e}")


@dataclass(frozen=True)
class Delivery:
    """One claimed stream entry, owned by `consumer` until acknowledged."""

    job: Job
    message_id: str
    consumer: str
    times_delivered: int = 1

    @property
    def redelivered(self) -> bool:
        return self.times_delivered > 1


class QueueEventType(str, enum.Enum):
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class QueueEvent:
    type: QueueEventType
    job_id: str
    task_id: str
    attempt: int
    delay: float = 0.0
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.type is not QueueEventType.RETRY_SCHEDULED


@dataclass(frozen=True)
class QueueStats:
    waiting: int
    delayed: int
    pending: int


class JobQueue:
    def __init__(
        self,
        redis_client: aioredis.Redis,
        name: str = "tasks",
        *,
        visibility_timeout: float = 30.0,
        block_ms: int = 1000,
        poll_interval: float = 0.1,
        promote_batch: int = 100,
    ):
        self.redis = redis_client
        self.name = name
        self.stream_key = f"{KEY_PREFIX}:{name}:stream"
        self.delayed_key = f"{KEY_PREFIX}:{name}:delayed"
        self.consumer_group = f"{name}-workers"
        self.visibility_timeout = visibility_timeout
        self.block_ms = block_ms
        self.poll_interval = poll_interval
        self.promote_batch = promote_batch

    def job_key(self, job_id: str) -> str:
        return f"{KEY_PREFIX}:{self.name}:job:{job_id}"

    async def initialize(self):
        """Create the consumer group if it doesn't exist"""
        try:
            await self.redis.xgroup_create(self.stream_key, self.consumer_group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", self.consumer_group, self.stream_key)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug("Consumer group already exists: %s", self.consumer_group)

    async def enqueue(self, payload: JobPayload, options: Optional[JobOptions] = None) -> Job:
        options = options or JobOptions()
        job = Job(
            id=uuid.uuid4().hex,
            payload=payload,
            attempt=1,
            options=options,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.job_key(job.id), mapping=job.to_hash())
            if options.initial_delay > 0:
                pipe.zadd(self.delayed_key, {job.id: _now_ms() + int(options.initial_delay * 1000)})
            else:
                pipe.xadd(self.stream_key, {"job_id": job.id, "task_id": payload.task_id})
            await pipe.execute()

        logger.info(
            "Enqueued job %s for task %s delay=%.3fs max_attempts=%s",
            job.id,
            payload.task_id,
            options.initial_delay,
            options.max_attempts,
        )
        return job

    async def promote_due_jobs(self) -> int:
        """Move delayed jobs whose time has come into the stream."""
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(self.delayed_key)
                    due = await pipe.zrangebyscore(
                        self.delayed_key, 0, _now_ms(), start=0, num=self.promote_batch
                    )
                    if not due:
                        await pipe.reset()
                        return 0
                    task_ids = []
                    for job_id in due:
                        task_ids.append(await pipe.hget(self.job_key(job_id), "task_id") or "")
                    pipe.multi()
                    pipe.zrem(self.delayed_key, *due)
                    for job_id, task_id in zip(due, task_ids):
                        pipe.xadd(self.stream_key, {"job_id": job_id, "task_id": task_id})
                    await pipe.execute()
                    logger.debug("Promoted %d delayed job(s)", len(due))
                    return len(due)
                except WatchError:
                    # another promoter moved them first
                    continue

    async def _reclaim_stalled(self, consumer: str) -> Optional[Delivery]:
        min_idle_ms = int(self.visibility_timeout * 1000)
        pending = await self.redis.xpending_range(
            self.stream_key, self.consumer_group, min="-", max="+", count=10
        )
        for entry in pending:
            if entry["time_since_delivered"] < min_idle_ms:
                continue
            claimed = await self.redis.xclaim(
                self.stream_key,
                self.consumer_group,
                consumer,
                min_idle_time=min_idle_ms,
                message_ids=[entry["message_id"]],
            )
            for message_id, fields in claimed:
                if not fields:
                    continue
                logger.warning(
                    "Reclaimed stalled message %s from %s (delivered %s times)",
                    message_id,
                    entry["consumer"],
                    entry["times_delivered"],
                )
                delivery = await self._to_delivery(
                    message_id, fields, consumer, int(entry["times_delivered"]) + 1
                )
                if delivery is not None:
                    return delivery
        return None

    async def _to_delivery(
        self, message_id: str, fields: Dict[str, str], consumer: str, times_delivered: int = 1
    ) -> Optional[Delivery]:
        job_id = fields.get("job_id")
        data = await self.redis.hgetall(self.job_key(job_id)) if job_id else {}
        if not data:
            # job already settled through an earlier delivery of this entry
            logger.warning("Dropping stream entry %s: job %s no longer exists", message_id, job_id)
            await self._ack_entry(message_id)
            return None
        try:
            job = Job.from_hash(data)
        except ValueError:
            logger.exception("Dropping stream entry %s: job %s is corrupt", message_id, job_id)
            await self._ack_entry(message_id, job_id)
            return None
        return Delivery(
            job=job,
            message_id=message_id,
            consumer=consumer,
            times_delivered=times_delivered,
        )

    async def dequeue(self, consumer: str, timeout: Optional[float] = None) -> Optional[Delivery]:
        """
        Wait until a job is eligible and claim it for `consumer`.

        Blocks indefinitely by default; with `timeout` (seconds) returns
        None when nothing became eligible in time.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            await self.promote_due_jobs()

            delivery = await self._reclaim_stalled(consumer)
            if delivery is not None:
                return delivery

            block_ms = self.block_ms
            if deadline is not None:
                remaining_ms = int((deadline - loop.time()) * 1000)
                block_ms = min(block_ms, max(remaining_ms, 1)) if block_ms else 0

            messages = await self.redis.xreadgroup(
                self.consumer_group,
                consumer,
                {self.stream_key: ">"},
                count=1,
                block=block_ms or None,
            )
            for _stream, message_list in messages or []:
                for message_id, fields in message_list:
                    delivery = await self._to_delivery(message_id, fields, consumer)
                    if delivery is not None:
                        return delivery

            if deadline is not None and loop.time() >= deadline:
                return None
            if not block_ms:
                await asyncio.sleep(self.poll_interval)

    async def touch(self, delivery: Delivery) -> bool:
        """
        Reset the idle time of a delivery that is still being worked on,
        so it is not reclaimed as stalled.

        Returns False once the entry is no longer pending for this
        consumer (settled, or reclaimed by another one).
        """
        pending = await self.redis.xpending_range(
            self.stream_key,
            self.consumer_group,
            min=delivery.message_id,
            max=delivery.message_id,
            count=1,
        )
        if not pending or pending[0]["consumer"] != delivery.consumer:
            return False
        # JUSTID leaves the delivery count alone
        claimed = await self.redis.xclaim(
            self.stream_key,
            self.consumer_group,
            delivery.consumer,
            min_idle_time=0,
            message_ids=[delivery.message_id],
            justid=True,
        )
        return bool(claimed)

    async def _ack_entry(self, message_id: str, job_id: Optional[str] = None):
        """Acknowledge and drop a stream entry, optionally deleting its job."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xack(self.stream_key, self.consumer_group, message_id)
            pipe.xdel(self.stream_key, message_id)
            if job_id:
                pipe.delete(self.job_key(job_id))
            await pipe.execute()

    async def ack_success(self, delivery: Delivery) -> QueueEvent:
        job = delivery.job
        await self._ack_entry(delivery.message_id, job.id)
        logger.info("Job %s completed (task %s, attempt %s)", job.id, job.task_id, job.attempt)
        return QueueEvent(QueueEventType.COMPLETED, job.id, job.task_id, job.attempt)

    async def ack_failure(self, delivery: Delivery, failures: int, error: str) -> QueueEvent:
        """
        Settle a failed attempt.

        `failures` is the authoritative count of failed attempts for the
        task; it drives the retry decision and numbers the next attempt.
        """
        job = delivery.job
        decision = decide(max(failures, 1), job.options.max_attempts, job.options.backoff)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xack(self.stream_key, self.consumer_group, delivery.message_id)
            pipe.xdel(self.stream_key, delivery.message_id)
            if decision.retry:
                next_attempt = max(failures, 1) + 1
                pipe.hset(self.job_key(job.id), mapping={"attempt": str(next_attempt), "last_error": error})
                pipe.zadd(self.delayed_key, {job.id: _now_ms() + int(decision.delay * 1000)})
            else:
                pipe.delete(self.job_key(job.id))
            await pipe.execute()

        if decision.retry:
            logger.info(
                "Job %s attempt %s failed, retry in %.3fs: %s", job.id, job.attempt, decision.delay, error
            )
            return QueueEvent(
                QueueEventType.RETRY_SCHEDULED, job.id, job.task_id, job.attempt, decision.delay, error
            )

        logger.warning(
            "Job %s failed after %s attempt(s) (task %s): %s", job.id, failures, job.task_id, error
        )
        return QueueEvent(QueueEventType.FAILED, job.id, job.task_id, job.attempt, error=error)

    async def discard(self, delivery: Delivery, reason: str) -> QueueEvent:
        job = delivery.job
        await self._ack_entry(delivery.message_id, job.id)
        logger.warning("Discarded job %s (task %s): %s", job.id, job.task_id, reason)
        return QueueEvent(QueueEventType.DISCARDED, job.id, job.task_id, job.attempt, error=reason)

    async def stats(self) -> QueueStats:
        delayed = await self.redis.zcard(self.delayed_key)
        length = await self.redis.xlen(self.stream_key)
        pending_info = await self.redis.xpending(self.stream_key, self.consumer_group)
        pending = int(pending_info["pending"]) if pending_info else 0
        return QueueStats(waiting=max(length - pending, 0), delayed=int(delayed), pending=pending)
