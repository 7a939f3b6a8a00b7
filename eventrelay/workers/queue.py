"""
Task queue backends

The broker abstraction the producer and the worker pool talk to. A message
dequeued from a queue stays invisible to other consumers until it is acked,
nacked (handed back after a delay) or rejected (moved to the dead list).
Un-acked messages come back on their own once the visibility timeout runs
out, which is how work held by a crashed worker is redelivered.
"""
from __future__ import annotations

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from eventrelay.core.config import settings
from eventrelay.core.exceptions import BrokerConnectionError
from eventrelay.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BrokerMessage:
    id: str
    queue: str
    body: str
    # times the broker handed this message out again after a failure or timeout
    redeliveries: int = 0
    raw: str = ""


class TaskQueue(ABC):
    """Durable named queues with ack/nack consumption"""

    @abstractmethod
    async def enqueue(self, queue: str, task_id: str, body: str, delay_seconds: float = 0) -> None:
        """Durably accept a message. Raises BrokerConnectionError."""

    @abstractmethod
    async def dequeue(self, queue: str, timeout: float) -> BrokerMessage | None:
        """Next ready message, or None if nothing arrived within timeout."""

    @abstractmethod
    async def ack(self, message: BrokerMessage) -> None:
        ...

    @abstractmethod
    async def nack(
        self,
        message: BrokerMessage,
        delay_seconds: float,
        count_redelivery: bool = True,
    ) -> None:
        """Hand the message back to its queue after delay_seconds."""

    @abstractmethod
    async def reject(self, message: BrokerMessage, reason: str) -> None:
        """Drop the message from the queue for good (dead list)."""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def reconnect(self) -> None:
        return None

    async def close(self) -> None:
        return None


def mask_redis_url(url: str) -> str:
    """Hide the password in a redis URL for logs (redis://:****@host:6379)"""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


def _encode_item(task_id: str, body: str, redeliveries: int = 0) -> str:
    return json.dumps({"id": task_id, "body": body, "redeliveries": redeliveries})


# Moves due delayed items and expired in-flight items back to ready, then
# pops one ready item into the in-flight set with its visibility deadline.
# KEYS: ready, delayed, inflight   ARGV: now, visibility_deadline, batch
_DEQUEUE_SCRIPT = """
local now = tonumber(ARGV[1])
local batch = tonumber(ARGV[3])
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', now, 'LIMIT', 0, batch)
for _, item in ipairs(due) do
  redis.call('ZREM', KEYS[2], item)
  redis.call('LPUSH', KEYS[1], item)
end
local expired = redis.call('ZRANGEBYSCORE', KEYS[3], '-inf', now, 'LIMIT', 0, batch)
for _, item in ipairs(expired) do
  redis.call('ZREM', KEYS[3], item)
  local msg = cjson.decode(item)
  msg['redeliveries'] = (tonumber(msg['redeliveries']) or 0) + 1
  redis.call('LPUSH', KEYS[1], cjson.encode(msg))
end
local item = redis.call('RPOP', KEYS[1])
if not item then
  return false
end
redis.call('ZADD', KEYS[3], tonumber(ARGV[2]), item)
return item
"""

# Only a message still held in-flight may be moved; a message whose
# visibility already expired was handed to someone else.
# KEYS: inflight, destination   ARGV: raw, new_item, score ("" = list push)
_SETTLE_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
if ARGV[3] == '' then
  redis.call('LPUSH', KEYS[2], ARGV[2])
else
  redis.call('ZADD', KEYS[2], tonumber(ARGV[3]), ARGV[2])
end
return 1
"""


class RedisTaskQueue(TaskQueue):
    """
    Reliable queue on Redis.

    Per queue: a ready list, a delayed sorted set (score = ready time),
    an in-flight sorted set (score = visibility deadline) and a dead list.
    """

    def __init__(
        self,
        url: str | None = None,
        prefix: str | None = None,
        visibility_timeout: float | None = None,
        client: aioredis.Redis | None = None,
    ):
        self.url = url or settings.REDIS_URL
        self.prefix = prefix or settings.TASK_QUEUE_PREFIX
        self.visibility_timeout = visibility_timeout or settings.BROKER_VISIBILITY_TIMEOUT_SECONDS
        self._client = client
        self._lock = asyncio.Lock()
        self._dequeue_script = None
        self._settle_script = None

    def _key(self, queue: str, kind: str) -> str:
        return f"{self.prefix}:{queue}:{kind}"

    async def _get_client(self) -> aioredis.Redis:
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is None:
                self._client = aioredis.from_url(self.url, decode_responses=True)
                logger.info("Task queue connected", extra_data={
                    "url": mask_redis_url(self.url),
                })
        return self._client

    async def _scripts(self):
        client = await self._get_client()
        if self._dequeue_script is None:
            self._dequeue_script = client.register_script(_DEQUEUE_SCRIPT)
            self._settle_script = client.register_script(_SETTLE_SCRIPT)
        return self._dequeue_script, self._settle_script

    async def enqueue(self, queue: str, task_id: str, body: str, delay_seconds: float = 0) -> None:
        item = _encode_item(task_id, body)
        try:
            client = await self._get_client()
            if delay_seconds > 0:
                await client.zadd(self._key(queue, "delayed"), {item: time.time() + delay_seconds})
            else:
                await client.lpush(self._key(queue, "ready"), item)
        except RedisError as e:
            raise BrokerConnectionError(str(e), {"queue": queue}) from e

    async def dequeue(self, queue: str, timeout: float) -> BrokerMessage | None:
        deadline = time.monotonic() + timeout
        while True:
            try:
                dequeue_script, _ = await self._scripts()
                now = time.time()
                raw = await dequeue_script(
                    keys=[
                        self._key(queue, "ready"),
                        self._key(queue, "delayed"),
                        self._key(queue, "inflight"),
                    ],
                    args=[now, now + self.visibility_timeout, 100],
                )
            except RedisError as e:
                raise BrokerConnectionError(str(e), {"queue": queue}) from e

            if raw:
                try:
                    item = json.loads(raw)
                    return BrokerMessage(
                        id=item["id"],
                        queue=queue,
                        body=item["body"],
                        redeliveries=int(item.get("redeliveries") or 0),
                        raw=raw,
                    )
                except (ValueError, KeyError, TypeError) as e:
                    await self._bury_unreadable(queue, raw, e)
                    continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(remaining, 0.2))

    async def _bury_unreadable(self, queue: str, raw: str, error: Exception) -> None:
        """Move an item that is not a valid message envelope from in-flight to the dead list"""
        logger.error("Unreadable item on task queue, moved to dead list", extra_data={
            "queue": queue,
            "error": f"{type(error).__name__}: {error}",
            "item": raw[:200],
        })
        await self._settle(
            BrokerMessage(id="", queue=queue, body="", raw=raw),
            self._key(queue, "dead"),
            json.dumps({"raw": raw, "reason": f"unreadable: {error}", "rejected_at": time.time()}),
            "",
        )

    async def _settle(self, message: BrokerMessage, destination: str, item: str, score: str) -> bool:
        try:
            _, settle_script = await self._scripts()
            moved = await settle_script(
                keys=[self._key(message.queue, "inflight"), destination],
                args=[message.raw, item, score],
            )
        except RedisError as e:
            raise BrokerConnectionError(str(e), {"queue": message.queue}) from e
        if not moved:
            logger.warning("Message was no longer in flight", extra_data={
                "task_id": message.id,
                "queue": message.queue,
            })
        return bool(moved)

    async def ack(self, message: BrokerMessage) -> None:
        try:
            client = await self._get_client()
            await client.zrem(self._key(message.queue, "inflight"), message.raw)
        except RedisError as e:
            raise BrokerConnectionError(str(e), {"queue": message.queue}) from e

    async def nack(
        self,
        message: BrokerMessage,
        delay_seconds: float,
        count_redelivery: bool = True,
    ) -> None:
        redeliveries = message.redeliveries + 1 if count_redelivery else message.redeliveries
        await self._settle(
            message,
            self._key(message.queue, "delayed"),
            _encode_item(message.id, message.body, redeliveries),
            str(time.time() + max(0.0, delay_seconds)),
        )

    async def reject(self, message: BrokerMessage, reason: str) -> None:
        dead = json.dumps({
            "id": message.id,
            "body": message.body,
            "redeliveries": message.redeliveries,
            "reason": reason,
            "rejected_at": time.time(),
        })
        await self._settle(message, self._key(message.queue, "dead"), dead, "")

    async def ping(self) -> bool:
        try:
            client = await self._get_client()
            return bool(await client.ping())
        except RedisError:
            return False

    async def reconnect(self) -> None:
        async with self._lock:
            old, self._client = self._client, None
            self._dequeue_script = None
            self._settle_script = None
        if old is not None:
            try:
                await old.aclose()
            except RedisError as e:
                logger.debug("Closing stale task queue connection failed", extra_data={"error": str(e)})
        client = await self._get_client()
        try:
            await client.ping()
        except RedisError as e:
            raise BrokerConnectionError(str(e)) from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Task queue connection closed")


class MemoryTaskQueue(TaskQueue):
    """
    In-process queue for tests and single-process local runs.

    Keeps settled messages around (acked, rejected) so callers can inspect
    what happened.
    """

    def __init__(self):
        self._ready: dict[str, deque[BrokerMessage]] = {}
        self._delayed: dict[str, list[tuple[float, BrokerMessage]]] = {}
        self._wakeups: dict[str, asyncio.Event] = {}
        self.inflight: dict[str, BrokerMessage] = {}
        self.acked: list[BrokerMessage] = []
        self.rejected: list[tuple[BrokerMessage, str]] = []

    def _wakeup(self, queue: str) -> asyncio.Event:
        if queue not in self._wakeups:
            self._wakeups[queue] = asyncio.Event()
        return self._wakeups[queue]

    def _put(self, message: BrokerMessage, delay_seconds: float) -> None:
        if delay_seconds > 0:
            self._delayed.setdefault(message.queue, []).append(
                (time.monotonic() + delay_seconds, message)
            )
        else:
            self._ready.setdefault(message.queue, deque()).append(message)
        self._wakeup(message.queue).set()

    def _promote(self, queue: str) -> float | None:
        """Move due delayed messages to ready; return seconds until the next one."""
        now = time.monotonic()
        waiting = []
        for ready_at, message in self._delayed.get(queue, []):
            if ready_at <= now:
                self._ready.setdefault(queue, deque()).append(message)
            else:
                waiting.append((ready_at, message))
        self._delayed[queue] = waiting
        if not waiting:
            return None
        return min(ready_at for ready_at, _ in waiting) - now

    async def enqueue(self, queue: str, task_id: str, body: str, delay_seconds: float = 0) -> None:
        self._put(BrokerMessage(id=task_id, queue=queue, body=body), delay_seconds)

    async def dequeue(self, queue: str, timeout: float) -> BrokerMessage | None:
        deadline = time.monotonic() + timeout
        while True:
            next_due = self._promote(queue)
            ready = self._ready.get(queue)
            if ready:
                message = ready.popleft()
                self.inflight[message.id] = message
                return message

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            wait = remaining if next_due is None else min(remaining, next_due)
            wakeup = self._wakeup(queue)
            wakeup.clear()
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=max(wait, 0.001))
            except asyncio.TimeoutError:
                pass

    async def ack(self, message: BrokerMessage) -> None:
        if self.inflight.pop(message.id, None) is not None:
            self.acked.append(message)

    async def nack(
        self,
        message: BrokerMessage,
        delay_seconds: float,
        count_redelivery: bool = True,
    ) -> None:
        if self.inflight.pop(message.id, None) is None:
            return
        redeliveries = message.redeliveries + 1 if count_redelivery else message.redeliveries
        self._put(replace(message, redeliveries=redeliveries), delay_seconds)

    async def reject(self, message: BrokerMessage, reason: str) -> None:
        self.inflight.pop(message.id, None)
        self.rejected.append((message, reason))

    async def ping(self) -> bool:
        return True

    def pending(self, queue: str) -> list[BrokerMessage]:
        """Messages waiting in a queue, ready ones first"""
        delayed = [message for _, message in sorted(
            self._delayed.get(queue, []), key=lambda entry: entry[0]
        )]
        return list(self._ready.get(queue, ())) + delayed

    def pending_delays(self, queue: str) -> list[float]:
        """Seconds until each delayed message in a queue becomes ready"""
        now = time.monotonic()
        return sorted(max(0.0, ready_at - now) for ready_at, _ in self._delayed.get(queue, []))


def create_task_queue(backend: str | None = None) -> TaskQueue:
    backend = backend or settings.TASK_BROKER_BACKEND
    if backend == "memory":
        return MemoryTaskQueue()
    return RedisTaskQueue()
