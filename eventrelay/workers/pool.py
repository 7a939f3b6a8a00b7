"""
Task Worker Pool

Consumes a fixed set of named queues, each with its own concurrency limit,
and routes every dequeued task to the handler registered for its type.

Outcome of one handler invocation:
- success             -> ack
- RetryLater(delay)   -> back on the queue after delay, not counted as a failure
- PermanentTaskError  -> rejected, never redelivered
- anything else       -> redelivered after the retry policy's delay, or
                         abandoned once the redelivery ceiling is reached
"""
from __future__ import annotations

import asyncio
import enum
import time
from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable

from eventrelay.core.config import settings
from eventrelay.core.exceptions import (
    BrokerConnectionError,
    PermanentTaskError,
    RetryLater,
    TaskPayloadError,
    UnknownTaskTypeError,
)
from eventrelay.core.logging import get_logger, set_correlation_id, task_log_context
from eventrelay.core.time import utcnow
from eventrelay.workers.payloads import Task, decode_envelope
from eventrelay.workers.queue import BrokerMessage, TaskQueue
from eventrelay.workers.registry import HandlerRegistry, RetryPolicy, TaskContext
from eventrelay.workers.retry import default_retry_policy

logger = get_logger(__name__)


@dataclass(frozen=True)
class QueueSpec:
    name: str
    concurrency: int
    task_timeout_seconds: float


def default_queue_specs() -> list[QueueSpec]:
    return [
        QueueSpec(
            settings.EVENTS_QUEUE_NAME,
            settings.EVENTS_QUEUE_CONCURRENCY,
            settings.EVENTS_QUEUE_TIMEOUT_SECONDS,
        ),
        QueueSpec(
            settings.WORKFLOW_QUEUE_NAME,
            settings.WORKFLOW_QUEUE_CONCURRENCY,
            settings.WORKFLOW_QUEUE_TIMEOUT_SECONDS,
        ),
        QueueSpec(
            settings.DEFAULT_QUEUE_NAME,
            settings.DEFAULT_QUEUE_CONCURRENCY,
            settings.DEFAULT_QUEUE_TIMEOUT_SECONDS,
        ),
    ]


class TaskOutcome(str, enum.Enum):
    ACKED = "acked"
    DEFERRED = "deferred"
    RETRIED = "retried"
    REJECTED = "rejected"
    ABANDONED = "abandoned"


class WorkerPool:
    """Process-wide dispatcher over all configured queues"""

    def __init__(
        self,
        task_queue: TaskQueue,
        registry: HandlerRegistry,
        queues: Iterable[QueueSpec] | None = None,
        retry_policy: RetryPolicy | None = None,
        dequeue_wait_seconds: float | None = None,
        reconnect_delay_seconds: float | None = None,
    ):
        self.task_queue = task_queue
        self.registry = registry
        self.queues = list(queues or default_queue_specs())
        self.retry_policy = retry_policy or default_retry_policy()
        self.dequeue_wait_seconds = (
            dequeue_wait_seconds if dequeue_wait_seconds is not None
            else settings.WORKER_DEQUEUE_WAIT_SECONDS
        )
        self.reconnect_delay_seconds = (
            reconnect_delay_seconds if reconnect_delay_seconds is not None
            else settings.WORKER_RECONNECT_DELAY_SECONDS
        )
        self.stats: Counter[str] = Counter()

        self._stopping = asyncio.Event()
        self._reconnect_lock = asyncio.Lock()
        self._connection_generation = 0
        self._consumers: list[asyncio.Task] = []

        names = [spec.name for spec in self.queues]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate queue names: {names}")
        for spec in self.queues:
            if spec.concurrency < 1:
                raise ValueError(f"Queue '{spec.name}' needs concurrency >= 1")

    @property
    def is_running(self) -> bool:
        return any(not consumer.done() for consumer in self._consumers)

    def start(self) -> None:
        """Spawn `concurrency` consumers per queue"""
        if self._consumers:
            raise RuntimeError("Worker pool already started")
        self._stopping.clear()
        for spec in self.queues:
            for index in range(spec.concurrency):
                self._consumers.append(asyncio.create_task(
                    self._consume(spec),
                    name=f"consumer:{spec.name}:{index}",
                ))
        logger.info(
            "Worker pool started",
            extra_data={
                "queues": {spec.name: spec.concurrency for spec in self.queues},
                "task_types": [t.value for t in self.registry.task_types],
            }
        )

    def stop(self) -> None:
        """Stop dequeuing; handlers already running finish."""
        self._stopping.set()

    async def wait_stopped(self) -> None:
        await self._stopping.wait()

    async def shutdown(self, timeout: float | None = None) -> None:
        self.stop()
        if not self._consumers:
            return
        done, pending = await asyncio.wait(self._consumers, timeout=timeout)
        for consumer in pending:
            consumer.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Worker pool shutdown timed out, consumers cancelled",
                extra_data={"cancelled": len(pending)}
            )
        self._consumers = []
        logger.info("Worker pool stopped", extra_data={"stats": dict(self.stats)})

    async def run(self) -> None:
        """Start, block until stop() is called, then drain."""
        self.start()
        try:
            await self.wait_stopped()
        finally:
            await self.shutdown()

    # ==================== consumption ====================

    async def _consume(self, spec: QueueSpec) -> None:
        while not self._stopping.is_set():
            generation = self._connection_generation
            try:
                message = await self.task_queue.dequeue(spec.name, timeout=self.dequeue_wait_seconds)
                if message is None:
                    continue
                await self.process_message(spec, message)
            except BrokerConnectionError as e:
                await self._reconnect(spec, generation, e)
            except Exception as e:
                # the consumer must outlive any broker or settle failure
                logger.error(
                    "Consumer loop error",
                    extra_data={"queue": spec.name, "error": str(e), "error_type": type(e).__name__},
                    exc_info=True,
                )
                self.stats["consumer_errors"] += 1
                await asyncio.sleep(self.reconnect_delay_seconds)

    async def _reconnect(self, spec: QueueSpec, generation: int, error: BrokerConnectionError) -> None:
        logger.warning(
            "Broker connection lost",
            extra_data={"queue": spec.name, "error": error.message}
        )
        self.stats["broker_disconnects"] += 1
        await asyncio.sleep(self.reconnect_delay_seconds)

        async with self._reconnect_lock:
            # another consumer already reconnected after this one saw the error
            if self._stopping.is_set() or generation != self._connection_generation:
                return
            try:
                await self.task_queue.reconnect()
            except BrokerConnectionError as e:
                logger.warning(
                    "Broker reconnect failed",
                    extra_data={"queue": spec.name, "error": e.message}
                )
                return
            self._connection_generation += 1
            logger.info("Broker reconnected", extra_data={"queue": spec.name})

    async def process_message(self, spec: QueueSpec, message: BrokerMessage) -> TaskOutcome:
        """Run one message through its handler and settle it with the broker"""
        try:
            task = decode_envelope(message.body)
        except (UnknownTaskTypeError, TaskPayloadError) as e:
            set_correlation_id(message.id)
            return await self._reject_undecodable(message, e)

        with task_log_context(task.id, task.task_type.value, spec.name):
            return await self._run(spec, message, task)

    async def _run(self, spec: QueueSpec, message: BrokerMessage, task: Task) -> TaskOutcome:
        registration = self.registry.get(task.task_type)
        if registration is None:
            return await self._reject_undecodable(message, UnknownTaskTypeError(task.task_type.value))

        policy = registration.retry_policy or self.retry_policy
        context = TaskContext(
            task_id=task.id,
            task_type=task.task_type,
            queue=spec.name,
            redeliveries=message.redeliveries,
            deadline=utcnow() + timedelta(seconds=spec.task_timeout_seconds),
        )

        started = time.monotonic()
        try:
            await asyncio.wait_for(
                registration.handler(context, task.payload),
                timeout=spec.task_timeout_seconds,
            )
        except RetryLater as e:
            await self.task_queue.nack(message, e.delay_seconds, count_redelivery=False)
            self.stats[TaskOutcome.DEFERRED.value] += 1
            logger.info(
                "Task deferred",
                extra_data={
                    "task_id": task.id,
                    "task_type": task.task_type.value,
                    "delay_seconds": e.delay_seconds,
                    "reason": e.reason,
                }
            )
            return TaskOutcome.DEFERRED
        except PermanentTaskError as e:
            await self.task_queue.reject(message, e.message)
            self.stats[TaskOutcome.REJECTED.value] += 1
            logger.error(
                "Task failed permanently",
                extra_data={
                    "task_id": task.id,
                    "task_type": task.task_type.value,
                    "error": e.message,
                    "details": e.details,
                }
            )
            return TaskOutcome.REJECTED
        except asyncio.TimeoutError:
            return await self._retry_or_abandon(
                message, task, policy,
                f"handler timed out after {spec.task_timeout_seconds}s",
            )
        except Exception as e:
            logger.error(
                "Task handler raised",
                extra_data={
                    "task_id": task.id,
                    "task_type": task.task_type.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            return await self._retry_or_abandon(message, task, policy, f"{type(e).__name__}: {e}")

        await self.task_queue.ack(message)
        self.stats[TaskOutcome.ACKED.value] += 1
        logger.info(
            "Task completed",
            extra_data={
                "task_id": task.id,
                "task_type": task.task_type.value,
                "queue": spec.name,
                "duration_seconds": round(time.monotonic() - started, 4),
            }
        )
        return TaskOutcome.ACKED

    async def _retry_or_abandon(
        self,
        message: BrokerMessage,
        task: Task,
        policy: RetryPolicy,
        reason: str,
    ) -> TaskOutcome:
        if message.redeliveries >= policy.max_redeliveries:
            await self.task_queue.reject(message, f"abandoned: {reason}")
            self.stats[TaskOutcome.ABANDONED.value] += 1
            logger.error(
                "Task abandoned after max redeliveries",
                extra_data={
                    "task_id": task.id,
                    "task_type": task.task_type.value,
                    "redeliveries": message.redeliveries,
                    "reason": reason,
                }
            )
            return TaskOutcome.ABANDONED

        delay = policy.delay_for(message.redeliveries + 1)
        await self.task_queue.nack(message, delay)
        self.stats[TaskOutcome.RETRIED.value] += 1
        logger.warning(
            "Task scheduled for redelivery",
            extra_data={
                "task_id": task.id,
                "task_type": task.task_type.value,
                "redelivery": message.redeliveries + 1,
                "delay_seconds": delay,
                "reason": reason,
            }
        )
        return TaskOutcome.RETRIED

    async def _reject_undecodable(self, message: BrokerMessage, error: Exception) -> TaskOutcome:
        await self.task_queue.reject(message, str(error))
        self.stats[TaskOutcome.REJECTED.value] += 1
        logger.error(
            "Task rejected, cannot be decoded",
            extra_data={
                "task_id": message.id,
                "queue": message.queue,
                "error": str(error),
            }
        )
        return TaskOutcome.REJECTED
