"""
Task Producer - validates, serializes and enqueues typed tasks
"""
import asyncio
from typing import Any, Iterable

from pydantic import BaseModel

from eventrelay.core.config import settings
from eventrelay.core.exceptions import (
    BrokerConnectionError,
    BrokerUnavailableError,
    TaskSerializationError,
    UnknownQueueError,
)
from eventrelay.core.logging import get_logger
from eventrelay.workers.payloads import (
    TaskType,
    build_payload,
    default_queue_for,
    encode_envelope,
)
from eventrelay.workers.queue import TaskQueue

logger = get_logger(__name__)


def configured_queue_names() -> list[str]:
    return [
        settings.EVENTS_QUEUE_NAME,
        settings.WORKFLOW_QUEUE_NAME,
        settings.DEFAULT_QUEUE_NAME,
    ]


class TaskProducer:
    """
    Enqueues tasks onto the broker.

    The broker has accepted the task by the time enqueue() returns. Broker
    hiccups are retried a few times with linear spacing before giving up
    with BrokerUnavailableError.
    """

    def __init__(
        self,
        task_queue: TaskQueue,
        known_queues: Iterable[str] | None = None,
        max_retries: int | None = None,
        retry_delay_seconds: float | None = None,
    ):
        self.task_queue = task_queue
        self.known_queues = set(known_queues or configured_queue_names())
        self.max_retries = max_retries if max_retries is not None else settings.PRODUCER_ENQUEUE_RETRIES
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None
            else settings.PRODUCER_RETRY_DELAY_SECONDS
        )

    def is_known_queue(self, queue: str | None) -> bool:
        return queue is None or queue in self.known_queues

    async def enqueue(
        self,
        task_type: TaskType | str,
        payload: BaseModel | dict[str, Any],
        target_queue: str | None = None,
        delay_seconds: float = 0,
    ) -> str:
        """
        Enqueue a task and return its id.

        Raises:
            TaskSerializationError: unknown task type, or payload does not fit its schema
            UnknownQueueError: target_queue is not a configured queue
            BrokerUnavailableError: the broker kept refusing the task
        """
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise TaskSerializationError(str(task_type), "unknown task type") from None
        model = build_payload(task_type, payload)
        queue = target_queue or default_queue_for(task_type)
        if queue not in self.known_queues:
            raise UnknownQueueError(queue, sorted(self.known_queues))

        task_id, body = encode_envelope(task_type, model)

        attempts = max(1, self.max_retries)
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                await self.task_queue.enqueue(queue, task_id, body, delay_seconds=delay_seconds)
                logger.debug(
                    "Task enqueued",
                    extra_data={
                        "task_id": task_id,
                        "task_type": task_type.value,
                        "queue": queue,
                        "delay_seconds": delay_seconds,
                    }
                )
                return task_id
            except BrokerConnectionError as e:
                last_error = e
                logger.warning(
                    "Enqueue failed, broker unreachable",
                    extra_data={
                        "task_id": task_id,
                        "queue": queue,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "error": e.message,
                    }
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delay_seconds * attempt)

        raise BrokerUnavailableError(queue, attempts, str(last_error))
