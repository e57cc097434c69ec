from __future__ import annotations

import uuid
from collections import defaultdict
from contextlib import contextmanager
from enum import Enum


class TaskKind(str, Enum):
    GENERATION = "generation"
    JOB = "job"


class TaskInProgressError(Exception):
    def __init__(self, user_id: str, kind: TaskKind) -> None:
        super().__init__(f"A {kind.value} task is already running for this user.")
        self.user_id = user_id
        self.kind = kind


class TaskGate:
    """
    Single-slot, non-blocking lock per (user, task kind). Never queues: a
    second start for the same slot is refused immediately.
    """

    def __init__(self) -> None:
        self._active: defaultdict[TaskKind, set[str]] = defaultdict(set)

    def start_task(self, user_id: str, kind: TaskKind = TaskKind.GENERATION) -> bool:
        active = self._active[kind]
        if user_id in active:
            return False
        active.add(user_id)
        return True

    def end_task(self, user_id: str, kind: TaskKind = TaskKind.GENERATION) -> None:
        self._active[kind].discard(user_id)

    def is_task_active(self, user_id: str, kind: TaskKind = TaskKind.GENERATION) -> bool:
        return user_id in self._active[kind]

    @contextmanager
    def acquire(self, user_id: str, kind: TaskKind = TaskKind.GENERATION):
        if not self.start_task(user_id, kind):
            raise TaskInProgressError(user_id, kind)
        try:
            yield
        finally:
            self.end_task(user_id, kind)


def generate_correlation_id(existing: str | None = None) -> str:
    if existing and existing.strip():
        return existing.strip()
    return uuid.uuid4().hex
