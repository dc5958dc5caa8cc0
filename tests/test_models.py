# tests/test_models.py

from __future__ import annotations

from taskflow_api.models import TaskStatus


def test_transition_graph() -> None:
    P, R, C, F = TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.COMPLETED, TaskStatus.FAILED

    assert P.can_transition_to(R)
    assert R.can_transition_to(R)
    assert R.can_transition_to(C)
    assert R.can_transition_to(F)

    assert not P.can_transition_to(C)
    assert not P.can_transition_to(F)
    assert not C.can_transition_to(R)
    assert not F.can_transition_to(C)


def test_failed_back_to_processing_only_on_retry() -> None:
    assert not TaskStatus.FAILED.can_transition_to(TaskStatus.PROCESSING)
    assert TaskStatus.FAILED.can_transition_to(TaskStatus.PROCESSING, retry=True)


def test_terminal_states() -> None:
    assert TaskStatus.COMPLETED.is_terminal
    assert not TaskStatus.FAILED.is_terminal
    assert TaskStatus.PENDING.allowed_sources() == frozenset()
