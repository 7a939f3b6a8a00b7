"""
Handler registry

Built once at startup and handed to the worker pool.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

from pydantic import BaseModel

from eventrelay.workers.payloads import TaskType


@dataclass(frozen=True)
class TaskContext:
    task_id: str
    task_type: TaskType
    queue: str
    redeliveries: int
    deadline: datetime


TaskHandler = Callable[[TaskContext, BaseModel], Awaitable[Any]]


class RetryPolicy(Protocol):
    max_redeliveries: int

    def delay_for(self, redelivery: int) -> float:
        ...


@dataclass(frozen=True)
class Registration:
    handler: TaskHandler
    retry_policy: RetryPolicy | None = None


class HandlerRegistry:
    """Maps each task type to exactly one handler"""

    def __init__(self):
        self._registrations: dict[TaskType, Registration] = {}

    def register(
        self,
        task_type: TaskType,
        handler: TaskHandler,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        task_type = TaskType(task_type)
        if task_type in self._registrations:
            raise ValueError(f"Handler already registered for {task_type.value}")
        self._registrations[task_type] = Registration(handler, retry_policy)

    def get(self, task_type: TaskType) -> Registration | None:
        return self._registrations.get(task_type)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._registrations

    @property
    def task_types(self) -> list[TaskType]:
        return list(self._registrations)
