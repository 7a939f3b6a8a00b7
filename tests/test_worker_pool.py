"""
Tests for the worker pool: dispatch, retry classification, concurrency
"""
import asyncio
import json

import pytest

from eventrelay.core.exceptions import (
    BrokerConnectionError,
    PermanentTaskError,
    RetryLater,
    TransientTaskError,
)
from eventrelay.workers.payloads import DeliveryTaskPayload, TaskType, build_payload, encode_envelope
from eventrelay.workers.pool import QueueSpec, TaskOutcome, WorkerPool
from eventrelay.workers.queue import BrokerMessage, MemoryTaskQueue
from eventrelay.workers.registry import HandlerRegistry
from eventrelay.workers.retry import LinearRetryPolicy

EVENTS = QueueSpec("events", concurrency=3, task_timeout_seconds=1.0)
POLICY = LinearRetryPolicy(base_delay_seconds=5, max_delay_seconds=60, max_redeliveries=2)


def _registry(handler, task_type=TaskType.DELIVERY, retry_policy=None) -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(task_type, handler, retry_policy)
    return registry


async def _dequeue(queue: MemoryTaskQueue, delivery_id: str = "d-1", redeliveries: int = 0) -> BrokerMessage:
    task_id, body = encode_envelope(TaskType.DELIVERY, DeliveryTaskPayload(delivery_id=delivery_id))
    await queue.enqueue("events", task_id, body)
    message = await queue.dequeue("events", timeout=0.1)
    if redeliveries:
        message = BrokerMessage(message.id, message.queue, message.body, redeliveries)
        queue.inflight[message.id] = message
    return message


class TestProcessMessage:
    """Outcome of a single handler invocation"""

    @pytest.mark.unit
    async def test_success_acks(self):
        queue = MemoryTaskQueue()
        seen = []

        async def handler(ctx, payload):
            seen.append((ctx.queue, ctx.task_type, payload.delivery_id))

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)
        message = await _dequeue(queue)

        outcome = await pool.process_message(EVENTS, message)

        assert outcome == TaskOutcome.ACKED
        assert seen == [("events", TaskType.DELIVERY, "d-1")]
        assert queue.acked == [message]

    @pytest.mark.unit
    async def test_permanent_error_rejects(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise PermanentTaskError("delivery gone")

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)
        outcome = await pool.process_message(EVENTS, await _dequeue(queue))

        assert outcome == TaskOutcome.REJECTED
        assert queue.rejected[0][1] == "delivery gone"
        assert queue.pending("events") == []

    @pytest.mark.unit
    async def test_transient_error_redelivers_with_policy_delay(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise TransientTaskError("processor down")

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)
        outcome = await pool.process_message(EVENTS, await _dequeue(queue))

        assert outcome == TaskOutcome.RETRIED
        [message] = queue.pending("events")
        assert message.redeliveries == 1
        [delay] = queue.pending_delays("events")
        assert 4 < delay <= 5

    @pytest.mark.unit
    async def test_unexpected_exception_is_transient(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise KeyError("oops")

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)

        assert await pool.process_message(EVENTS, await _dequeue(queue)) == TaskOutcome.RETRIED

    @pytest.mark.unit
    async def test_abandoned_at_redelivery_ceiling(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise TransientTaskError("still down")

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)
        outcome = await pool.process_message(EVENTS, await _dequeue(queue, redeliveries=2))

        assert outcome == TaskOutcome.ABANDONED
        assert queue.rejected[0][1].startswith("abandoned")
        assert queue.pending("events") == []

    @pytest.mark.unit
    async def test_per_task_type_policy_wins(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise TransientTaskError("down")

        strict = LinearRetryPolicy(max_redeliveries=0)
        pool = WorkerPool(queue, _registry(handler, retry_policy=strict), queues=[EVENTS], retry_policy=POLICY)

        assert await pool.process_message(EVENTS, await _dequeue(queue)) == TaskOutcome.ABANDONED

    @pytest.mark.unit
    async def test_retry_later_does_not_count(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            raise RetryLater(30, "not eligible")

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY)
        outcome = await pool.process_message(EVENTS, await _dequeue(queue, redeliveries=2))

        assert outcome == TaskOutcome.DEFERRED
        [message] = queue.pending("events")
        assert message.redeliveries == 2
        [delay] = queue.pending_delays("events")
        assert 25 < delay <= 30

    @pytest.mark.unit
    async def test_timeout_cancels_handler_and_retries(self):
        queue = MemoryTaskQueue()
        cancelled = asyncio.Event()

        async def handler(ctx, payload):
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        spec = QueueSpec("events", concurrency=1, task_timeout_seconds=0.05)
        pool = WorkerPool(queue, _registry(handler), queues=[spec], retry_policy=POLICY)

        outcome = await pool.process_message(spec, await _dequeue(queue))

        assert outcome == TaskOutcome.RETRIED
        assert cancelled.is_set()

    @pytest.mark.unit
    async def test_unknown_task_type_rejected(self):
        queue = MemoryTaskQueue()
        pool = WorkerPool(queue, HandlerRegistry(), queues=[EVENTS], retry_policy=POLICY)
        await queue.enqueue("events", "t-1", json.dumps({"id": "t-1", "task_type": "send_fax", "payload": {}}))
        message = await queue.dequeue("events", timeout=0.1)

        assert await pool.process_message(EVENTS, message) == TaskOutcome.REJECTED
        assert "send_fax" in queue.rejected[0][1]

    @pytest.mark.unit
    async def test_unregistered_task_type_rejected(self):
        queue = MemoryTaskQueue()

        async def handler(ctx, payload):
            pass

        pool = WorkerPool(queue, _registry(handler, TaskType.CHAT_WORKFLOW), queues=[EVENTS], retry_policy=POLICY)

        assert await pool.process_message(EVENTS, await _dequeue(queue)) == TaskOutcome.REJECTED


class TestConcurrency:

    @pytest.mark.unit
    async def test_handlers_in_one_queue_run_in_parallel(self):
        queue = MemoryTaskQueue()
        running = 0
        peak = 0
        done = asyncio.Event()
        finished = []

        async def handler(ctx, payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1
            finished.append(payload.delivery_id)
            if len(finished) == 6:
                done.set()

        pool = WorkerPool(queue, _registry(handler), queues=[EVENTS], retry_policy=POLICY,
                          dequeue_wait_seconds=0.05)
        for i in range(6):
            task_id, body = encode_envelope(TaskType.DELIVERY, DeliveryTaskPayload(delivery_id=f"d-{i}"))
            await queue.enqueue("events", task_id, body)

        pool.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        await pool.shutdown(timeout=1)

        assert peak == 3
        assert len(queue.acked) == 6

    @pytest.mark.unit
    async def test_slow_queue_does_not_block_other_queue(self):
        queue = MemoryTaskQueue()
        release = asyncio.Event()
        fast_done = asyncio.Event()

        async def slow(ctx, payload):
            await release.wait()

        async def fast(ctx, payload):
            fast_done.set()

        registry = HandlerRegistry()
        registry.register(TaskType.DELIVERY, slow)
        registry.register(TaskType.CHAT_WORKFLOW, fast)
        specs = [
            QueueSpec("events", concurrency=1, task_timeout_seconds=5),
            QueueSpec("chat_workflow", concurrency=1, task_timeout_seconds=5),
        ]
        pool = WorkerPool(queue, registry, queues=specs, retry_policy=POLICY, dequeue_wait_seconds=0.05)

        for task_type, name, payload in [
            (TaskType.DELIVERY, "events", {"delivery_id": "d-1"}),
            (TaskType.CHAT_WORKFLOW, "chat_workflow", {"message_id": "m", "session_id": "s"}),
        ]:
            task_id, body = encode_envelope(task_type, build_payload(task_type, payload))
            await queue.enqueue(name, task_id, body)

        pool.start()
        await asyncio.wait_for(fast_done.wait(), timeout=2)
        release.set()
        await pool.shutdown(timeout=1)

    @pytest.mark.unit
    def test_duplicate_queue_names_rejected(self):
        with pytest.raises(ValueError):
            WorkerPool(MemoryTaskQueue(), HandlerRegistry(), queues=[EVENTS, EVENTS])


class FlappingQueue(MemoryTaskQueue):
    """Raises BrokerConnectionError on the first dequeue"""

    def __init__(self):
        super().__init__()
        self.failed = False
        self.reconnects = 0

    async def dequeue(self, queue, timeout):
        if not self.failed:
            self.failed = True
            raise BrokerConnectionError("connection lost")
        return await super().dequeue(queue, timeout)

    async def reconnect(self):
        self.reconnects += 1


class TestBrokerReconnect:

    @pytest.mark.unit
    async def test_consumer_reconnects_and_resumes(self):
        queue = FlappingQueue()
        done = asyncio.Event()

        async def handler(ctx, payload):
            done.set()

        spec = QueueSpec("events", concurrency=1, task_timeout_seconds=1)
        pool = WorkerPool(queue, _registry(handler), queues=[spec], retry_policy=POLICY,
                          dequeue_wait_seconds=0.05, reconnect_delay_seconds=0)
        task_id, body = encode_envelope(TaskType.DELIVERY, DeliveryTaskPayload(delivery_id="d-1"))
        await queue.enqueue("events", task_id, body)

        pool.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        await pool.shutdown(timeout=1)

        assert queue.reconnects == 1
        assert pool.stats["broker_disconnects"] == 1

    @pytest.mark.unit
    async def test_consumer_survives_unexpected_broker_error(self):
        from redis.exceptions import ReadOnlyError

        class ReadOnlyOnceQueue(MemoryTaskQueue):
            def __init__(self):
                super().__init__()
                self.failed = False

            async def dequeue(self, queue, timeout):
                if not self.failed:
                    self.failed = True
                    raise ReadOnlyError("You can't write against a read only replica.")
                return await super().dequeue(queue, timeout)

        queue = ReadOnlyOnceQueue()
        done = asyncio.Event()

        async def handler(ctx, payload):
            done.set()

        spec = QueueSpec("events", concurrency=1, task_timeout_seconds=1)
        pool = WorkerPool(queue, _registry(handler), queues=[spec], retry_policy=POLICY,
                          dequeue_wait_seconds=0.05, reconnect_delay_seconds=0)
        task_id, body = encode_envelope(TaskType.DELIVERY, DeliveryTaskPayload(delivery_id="d-1"))
        await queue.enqueue("events", task_id, body)

        pool.start()
        await asyncio.wait_for(done.wait(), timeout=2)
        assert pool.is_running
        await pool.shutdown(timeout=1)

        assert pool.stats["consumer_errors"] == 1
        assert [m.id for m in queue.acked] == [task_id]


class TestRegistry:

    @pytest.mark.unit
    def test_duplicate_registration_rejected(self):
        async def handler(ctx, payload):
            pass

        registry = _registry(handler)
        with pytest.raises(ValueError):
            registry.register(TaskType.DELIVERY, handler)

    @pytest.mark.unit
    def test_contains(self):
        async def handler(ctx, payload):
            pass

        registry = _registry(handler)
        assert TaskType.DELIVERY in registry
        assert TaskType.CHAT_WORKFLOW not in registry
