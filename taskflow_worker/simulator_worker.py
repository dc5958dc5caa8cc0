import asyncio
import logging
import random
import signal
import sys
from datetime import datetime, timezone
from functools import partial
from typing import AsyncIterator

from taskflow_api.config import Settings, load_settings
from taskflow_api.crud_task import TaskStore
from taskflow_api.database import (
    check_database,
    create_engine_from_settings,
    create_session_factory,
    init_models,
)
from taskflow_api.errors import DependencyUnavailableError
from taskflow_api.logging_setup import setup_logging
from taskflow_api.queue_manager import JobPayload, JobQueue
from taskflow_api.redis_client import check_redis, create_redis
from taskflow_worker.status_projector import StatusProjector
from taskflow_worker.task_processor import Progress, Result, WorkEvent, WorkerPool

logger = logging.getLogger(__name__)


async def simulate_task(
    payload: JobPayload,
    steps: int = 5,
    step_delay: float = 2.0,
) -> AsyncIterator[WorkEvent]:
    """
    Stand-in for real work: a few timed steps with progress, then a summary.

    Progress goes 36, 52, ... capped at 90 so completion is the only
    write that reaches 100.
    """
    logger.info("Starting task %s name=%r", payload.task_id, payload.name)

    for i in range(1, steps + 1):
        await asyncio.sleep(step_delay)
        progress = min(20 + i * 16, 90)
        logger.debug("Task %s progress: %s%%", payload.task_id, progress)
        yield Progress(progress)

    yield Result(
        {
            "processedAt": datetime.now(timezone.utc).isoformat(),
            "itemsProcessed": random.randint(100, 1099),
            "successRate": f"{random.random() * 0.2 + 0.8:.2f}",
            "executionTime": f"~{steps * step_delay:g} seconds",
        }
    )


def build_pool(settings: Settings, store: TaskStore, queue: JobQueue) -> WorkerPool:
    work = partial(simulate_task, steps=settings.work_steps, step_delay=settings.work_step_delay)
    return WorkerPool(
        queue,
        StatusProjector(store),
        work,
        concurrency=settings.worker_concurrency,
        max_stalled=settings.max_stalled,
    )


async def run_worker(settings: Settings) -> None:
    engine = create_engine_from_settings(settings)
    redis_client = create_redis(settings)
    try:
        await check_database(engine)
        await init_models(engine)
        await check_redis(redis_client)

        queue = JobQueue(
            redis_client,
            settings.queue_name,
            visibility_timeout=settings.visibility_timeout,
            block_ms=settings.block_ms,
        )
        await queue.initialize()

        pool = build_pool(settings, TaskStore(create_session_factory(engine)), queue)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, pool.request_stop)
            except NotImplementedError:
                logger.debug("Signal handlers not supported on this event loop")

        logger.info(
            "Task worker started queue=%s concurrency=%s", settings.queue_name, settings.worker_concurrency
        )
        await pool.run()
    finally:
        await redis_client.aclose()
        await engine.dispose()


def main() -> None:
    """Main entry point for the worker process"""
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_dir, "worker.log")

    try:
        asyncio.run(run_worker(settings))
    except DependencyUnavailableError as e:
        logger.critical("Worker cannot start: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")


if __name__ == "__main__":
    main()
