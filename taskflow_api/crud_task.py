import logging
import uuid
from typing import Any, List, Optional, Union
from uuid import UUID

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow_api.errors import InvalidTransitionError, StaleAttemptError
from taskflow_api.models import Task, TaskStatus, utcnow

logger = logging.getLogger(__name__)

TaskId = Union[UUID, str]


def clamp_progress(value: Union[int, float]) -> int:
    return max(0, min(100, int(value)))


def parse_task_id(task_id: TaskId) -> Optional[UUID]:
    if isinstance(task_id, UUID):
        return task_id
    try:
        return UUID(str(task_id))
    except ValueError:
        return None


def _touched_at():
    """updated_at for a write: now, but never behind the stored value."""
    now = literal(utcnow(), Task.__table__.c.updated_at.type)
    return case((Task.updated_at > now, Task.updated_at), else_=now)


class TaskStore:
    """
    Durable task records, the only source of truth for status, progress
    and result.

    Every mutation is a single UPDATE keyed by id whose WHERE clause
    carries the legal source states (and the attempt fence when given),
    so the database serializes concurrent writers for the same task and
    a write is either applied whole or not at all.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, name: str, description: str) -> Task:
        if not name or not name.strip():
            raise ValueError("name is required")
        if not description or not description.strip():
            raise ValueError("description is required")

        now = utcnow()
        task = Task(
            id=uuid.uuid4(),
            name=name.strip(),
            description=description.strip(),
            status=TaskStatus.PENDING,
            progress=0,
            retries=0,
            attempt=0,
            created_at=now,
            updated_at=now,
        )
        async with self._session_factory() as session:
            session.add(task)
            await session.commit()
            await session.refresh(task)

        logger.info("Created task %s name=%r", task.id, task.name)
        return task

    async def get(self, task_id: TaskId) -> Optional[Task]:
        parsed = parse_task_id(task_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(select(Task).where(Task.id == parsed))
            return result.scalar_one_or_none()

    async def list(
        self,
        status: Optional[TaskStatus] = None,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[Task]:
        stmt = select(Task).order_by(Task.created_at.desc(), Task.seq.asc())
        if status is not None:
            stmt = stmt.where(Task.status == TaskStatus(status))
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count(self, status: Optional[TaskStatus] = None) -> int:
        stmt = select(func.count()).select_from(Task)
        if status is not None:
            stmt = stmt.where(Task.status == TaskStatus(status))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def update_status(
        self,
        task_id: TaskId,
        status: TaskStatus,
        progress: int,
        *,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Optional[Task]:
        """
        Move a task to `status` in one conditional write.

        With `attempt`, the write only lands for the active attempt:
        processing is accepted from a newer attempt or from the active one
        while it is still processing, completed/failed only from the
        active attempt. A transition to failed also counts one retry.

        Returns None for an unknown id. Raises InvalidTransitionError or
        StaleAttemptError when the task exists but the write was refused.
        """
        parsed = parse_task_id(task_id)
        if parsed is None:
            return None
        status = TaskStatus(status)
        sources = status.allowed_sources(retry=attempt is not None)

        values = {
            "status": status,
            "progress": clamp_progress(progress),
            "result": result if status is TaskStatus.COMPLETED else None,
            "error": error if status is TaskStatus.FAILED else None,
            "updated_at": _touched_at(),
        }
        conditions = [Task.id == parsed, Task.status.in_(sources)]

        if attempt is not None:
            if status is TaskStatus.PROCESSING:
                conditions.append(
                    or_(
                        Task.attempt < attempt,
                        and_(Task.attempt == attempt, Task.status == TaskStatus.PROCESSING),
                    )
                )
                values["attempt"] = attempt
            else:
                conditions.append(Task.attempt == attempt)

        if status is TaskStatus.FAILED:
            values["retries"] = Task.retries + 1

        stmt = (
            update(Task)
            .where(*conditions)
            .values(**values)
            .returning(Task)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            updated = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

            if updated is not None:
                logger.debug(
                    "Task %s -> %s progress=%s attempt=%s",
                    parsed,
                    status.value,
                    updated.progress,
                    updated.attempt,
                )
                return updated

            current = (await session.execute(select(Task).where(Task.id == parsed))).scalar_one_or_none()

        if current is None:
            return None
        if current.status not in sources:
            raise InvalidTransitionError(parsed, current.status.value, status.value)
        raise StaleAttemptError(parsed, attempt, current.attempt)

    async def increment_retries(self, task_id: TaskId) -> Optional[int]:
        parsed = parse_task_id(task_id)
        if parsed is None:
            return None
        stmt = (
            update(Task)
            .where(Task.id == parsed)
            .values(retries=Task.retries + 1, updated_at=_touched_at())
            .returning(Task.retries)
        )
        async with self._session_factory() as session:
            retries = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
        return retries
