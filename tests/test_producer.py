"""
Tests for TaskProducer
"""
import pytest

from eventrelay.core.exceptions import (
    BrokerConnectionError,
    BrokerUnavailableError,
    EnqueueError,
    TaskSerializationError,
    UnknownQueueError,
)
from eventrelay.workers.payloads import TaskType, decode_envelope
from eventrelay.workers.producer import TaskProducer
from eventrelay.workers.queue import MemoryTaskQueue


class DownQueue(MemoryTaskQueue):
    """Fails the first `failures` enqueues"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def enqueue(self, queue, task_id, body, delay_seconds=0):
        self.calls += 1
        if self.calls <= self.failures:
            raise BrokerConnectionError("connection reset")
        await super().enqueue(queue, task_id, body, delay_seconds)


class TestEnqueue:

    @pytest.mark.unit
    async def test_enqueue_returns_task_id(self, producer, task_queue):
        task_id = await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"})

        [message] = task_queue.pending("events")
        assert message.id == task_id
        assert decode_envelope(message.body).payload.delivery_id == "d-1"

    @pytest.mark.unit
    async def test_explicit_queue(self, producer, task_queue):
        await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"}, target_queue="default")

        assert len(task_queue.pending("default")) == 1

    @pytest.mark.unit
    async def test_delay_goes_to_delayed_set(self, producer, task_queue):
        await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"}, delay_seconds=30)

        [delay] = task_queue.pending_delays("events")
        assert 25 < delay <= 30

    @pytest.mark.unit
    async def test_unknown_queue(self, producer, task_queue):
        with pytest.raises(UnknownQueueError):
            await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"}, target_queue="nope")

        assert task_queue.pending("nope") == []

    @pytest.mark.unit
    async def test_invalid_payload(self, producer):
        with pytest.raises(TaskSerializationError):
            await producer.enqueue(TaskType.DELIVERY, {"event": {}})

    @pytest.mark.unit
    async def test_unknown_task_type_string(self, producer, task_queue):
        with pytest.raises(TaskSerializationError) as exc_info:
            await producer.enqueue("send_fax", {})

        assert isinstance(exc_info.value, EnqueueError)
        assert exc_info.value.details["task_type"] == "send_fax"
        assert task_queue.pending("events") == []


class TestBrokerRetries:

    @pytest.mark.unit
    async def test_transient_broker_error_retried(self):
        queue = DownQueue(failures=2)
        producer = TaskProducer(queue, max_retries=3, retry_delay_seconds=0)

        await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"})

        assert queue.calls == 3
        assert len(queue.pending("events")) == 1

    @pytest.mark.unit
    async def test_gives_up_after_budget(self):
        queue = DownQueue(failures=10)
        producer = TaskProducer(queue, max_retries=3, retry_delay_seconds=0)

        with pytest.raises(BrokerUnavailableError):
            await producer.enqueue(TaskType.DELIVERY, {"delivery_id": "d-1"})

        assert queue.calls == 3
