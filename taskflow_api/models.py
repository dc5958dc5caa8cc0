import enum
import uuid
from datetime import datetime, timezone
from typing import FrozenSet

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Enum, Integer, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from taskflow_api.database import Base


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def allowed_sources(self, retry: bool = False) -> FrozenSet["TaskStatus"]:
        """
        States from which a write may move a task into this status.

        failed -> processing is only legal for a queue-driven retry, so
        the caller has to ask for it explicitly.
        """
        sources = {src for src, targets in _TRANSITIONS.items() if self in targets}
        if self is TaskStatus.PROCESSING and not retry:
            sources.discard(TaskStatus.FAILED)
        return frozenset(sources)

    def can_transition_to(self, new_status: "TaskStatus", retry: bool = False) -> bool:
        return self in new_status.allowed_sources(retry=retry)

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.COMPLETED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_tasks_progress_range"),
        CheckConstraint("retries >= 0", name="ck_tasks_retries_nonnegative"),
    )

    # insertion order, tie-break when created_at is equal
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Uuid(as_uuid=True), unique=True, index=True, nullable=False, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(
        Enum(
            TaskStatus,
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
            validate_strings=True,
        ),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )
    progress = Column(Integer, nullable=False, default=0)
    result = Column(JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql"), nullable=True)
    error = Column(Text, nullable=True)
    retries = Column(Integer, nullable=False, default=0)
    # active attempt number, fences writes from superseded attempts
    attempt = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<Task(id={self.id}, name={self.name!r}, status={self.status}, progress={self.progress})>"
